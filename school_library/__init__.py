"""School Library - Core Application Package

This package contains the core application modules including:
- API endpoints (api.py)
- Library service layer: onboarding, catalog, circulation, dashboards (library.py)
- CLI interface (main.py)
- Records (models.py)
- Store collaborators (store.py, database.py, services/supabase_store.py)
"""
