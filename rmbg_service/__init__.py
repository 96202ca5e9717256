"""
RMBG background removal package.

Exposes reusable primitives for loading the segmentation model, removing
backgrounds from single images or queued batches, compositing new
backgrounds, and serving the FastAPI application.
"""
