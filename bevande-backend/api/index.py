"""Serverless entrypoint for the Imperatore Bevande API.

Vercel's Python runtime imports the FastAPI ``app`` from here and serves the
storefront endpoints as an ASGI handler.
"""

from app import app  # noqa: F401
