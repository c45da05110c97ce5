"""
impact_pool.api — FastAPI endpoints for collection triggers and allocations.
"""
