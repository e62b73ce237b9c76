"""
Cashkdi Payments

Payment orchestration over Orange Money, MTN Mobile Money and card
processors.
"""
__version__ = "0.1.0"
