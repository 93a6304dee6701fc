"""
Service layer for the migration engine.
"""
