"""
Business services used by the background jobs.
"""
