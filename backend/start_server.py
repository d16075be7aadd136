"""
Simple server starter script.
Run this from command line: python start_server.py
"""
import os
import sys

# Add current directory to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

if __name__ == '__main__':
    from app import create_app

    app = create_app()

    print("=" * 60)
    print("          Ride Marketplace Backend Server")
    print("=" * 60)
    print()
    print("Server URL:     http://127.0.0.1:5000")
    print("API Base:       http://127.0.0.1:5000/api/")
    print()
    print("Endpoints:")
    print("  GET  /api/health                          - Health check")
    print("  GET  /api/rides                           - Search rides")
    print("  POST /api/bookings/checkout               - Book seats")
    print("  POST /api/bookings/<id>/driver-decision   - Accept or reject")
    print("  POST /api/bookings/<id>/passenger-cancel  - Cancel a booking")
    print("  GET  /api/admin/driver-balances           - Driver balances")
    print()
    print("=" * 60)
    print("Press CTRL+C to stop the server")
    print("=" * 60)
    print()

    # Run without reloader to avoid issues on Windows
    app.run(
        host='127.0.0.1',
        port=5000,
        debug=False,
        use_reloader=False,
        threaded=True
    )
