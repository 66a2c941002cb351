"""
Vercel serverless entry point for Testimonial Hub.

NOTE ON SQLITE + VERCEL:
Vercel's serverless functions have a read-only filesystem except for /tmp, so
SQLite writes do not survive cold starts. Set DATABASE_PATH=/tmp/testimonials.db
to evaluate the API there; revenue events and testimonials are lost when the
instance is recycled. For real deployments run the app with gunicorn on a host
with a persistent disk (see gunicorn.conf.py).
"""

import sys
import os

# Make the project root importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import app, init_db

# /tmp starts empty on every cold start
init_db()

# The @vercel/python runtime calls app(environ, start_response) directly
