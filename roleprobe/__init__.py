"""Multi-role access control and payload tester"""

__version__ = "1.0.0"
