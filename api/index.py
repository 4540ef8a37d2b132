"""
Vercel serverless entry point for Lead Velocity.

Every /functions/v1/* route is served by the single Flask app. Vercel only
allows writes under /tmp, so set DATABASE_PATH=/tmp/leadvelocity.db there, or
deploy with gunicorn on a host with a persistent disk.
"""

import sys
import os

# Make the project root importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import app, init_db

# Tables are created lazily on cold start
init_db()
