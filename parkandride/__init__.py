# File: parkandride/__init__.py
"""Park-and-ride booking allocation and pricing engine"""

__version__ = "1.0.0"
