"""HTTP API for canvasflow."""
