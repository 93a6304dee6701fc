"""
Migration engine for moving users between directory tenants.
"""

__version__ = "0.1.0"
