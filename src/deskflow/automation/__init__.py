"""
Automation Module
=================

Bounded context for rule-based ticket automation.

Layers:
- domain: condition trees, actions, rule selection (pure)
- application: rule engine service, dispatcher, ports, DTOs
- infrastructure: SQLAlchemy adapters, queue worker
- interfaces: FastAPI routes
"""
