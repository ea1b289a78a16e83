"""
Content-addressed embedding pipeline: atoms, job queue and worker.
"""
