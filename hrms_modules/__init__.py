"""HRMS business modules built on ``hrms_kernel``."""
