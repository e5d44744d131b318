"""
Background job runtime: worker pool, periodic triggers and the service entry point.
"""
