"""
Business logic services for Cashkdi.

Import services from their modules directly; this package keeps no
re-exports so provider adapters can depend on the signature service.
"""
