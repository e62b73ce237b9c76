"""
FastAPI routers: payments, provider webhooks and admin.
"""
