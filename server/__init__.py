"""
Server side of the E2EE core: SQLAlchemy key store, JWT auth and the
FastAPI routes that carry the E2EE operations over HTTP.
"""
