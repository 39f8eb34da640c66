"""
Replica Router Client

Command line front end for the replica router.
"""

__version__ = "0.1.0"
