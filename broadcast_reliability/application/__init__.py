"""
Application Module

FastAPI operational API.
"""
