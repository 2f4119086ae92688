"""
Background-removal comparison service package.

Exposes reusable primitives for submitting an image to several hosted
background-removal models, polling their predictions, scoring the cutouts with
a vision model, and serving the FastAPI application.
"""
