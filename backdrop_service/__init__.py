"""
Background removal service package.

Exposes reusable primitives for validating uploads, segmenting the
foreground with a remote service or a local model, compositing the result
over a new background, and serving the FastAPI application.
"""
