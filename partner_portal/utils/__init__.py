# partner_portal/utils/__init__.py
"""
Shared application helpers
"""
