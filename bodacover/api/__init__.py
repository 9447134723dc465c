"""
Operator HTTP API (FastAPI).
"""
