"""
FastAPI routers for the lead import API.
"""
