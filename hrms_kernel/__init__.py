"""
HRMS Kernel

Shared foundation for the HR/payroll expense engine:
- Declarative ORM base with portable UUID and Decimal columns
- Engine / session lifecycle with commit-or-rollback scopes
- Typed exception hierarchy with stable error codes
- Structured JSON logging
- Hash-chained audit trail
- Injectable clock
"""

__version__ = "0.1.0"
