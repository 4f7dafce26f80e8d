"""School Library - Services Package

This package contains service modules for external integrations:
- HTTP client abstraction
- Hosted Supabase store (PostgREST + GoTrue)
"""
