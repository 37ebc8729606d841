#!/usr/bin/env python3
"""
Main entry point for the Meeting Zone API

Environment:
  GOOGLE_MAPS_API_KEY=...        # geocoding and travel time
  AZURE_MAPS_KEY=...             # isochrones and place search
  MEETZONE_BUFFER_SECONDS=900    # optional: isochrone budget buffer
  PORT=5001 / HOST=0.0.0.0       # optional: bind address
"""

import os

from meetzone.app import create_app
from meetzone.config import Settings, configure_logging

settings = Settings.from_env()
configure_logging(settings)
app = create_app(settings)

if __name__ == '__main__':
    if not settings.has_google_key or not settings.has_azure_key:
        print("\n" + "=" * 50)
        print("SETUP REQUIRED:")
        print("=" * 50)
        print("1. Set GOOGLE_MAPS_API_KEY (Geocoding + Directions APIs enabled)")
        print("2. Set AZURE_MAPS_KEY (Route Range + Search APIs)")
        print("3. Put them in a .env file and restart the app")
        print("=" * 50)
        print("API will start but meeting-zone features will be disabled without both keys\n")
    app.run(debug=True, host=os.getenv('HOST', '0.0.0.0'), port=int(os.getenv('PORT', 5001)))
