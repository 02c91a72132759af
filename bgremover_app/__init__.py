"""
Background-removal front end package.

Drives the upload -> prediction -> poll -> persist flow for a user session and
serves the HTTP layer (prediction proxy + session endpoints) with FastAPI.
"""
