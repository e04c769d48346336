"""
Core domain: models, errors, error classification and backoff policy.
"""
