"""
Core Sentry - API Package
"""
