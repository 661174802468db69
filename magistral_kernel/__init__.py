"""
Magistral Kernel - persistence, audit trail and shared primitives for the
compounded-prescription fulfillment system.
"""

__version__ = "0.1.0"
