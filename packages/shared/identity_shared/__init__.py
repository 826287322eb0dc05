"""
Pydantic schemas shared between the identity core and its external callers
(controllers, admin front end, event consumers).
"""

__version__ = "0.1.0"
