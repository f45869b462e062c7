"""
Partner portal application package.

Hosts the models, admin routes and the LMS/CRM synchronization engine.
"""
