"""
HTTP API for the CAT engine.
"""
