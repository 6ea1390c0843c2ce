# File: parkandride/infrastructure/__init__.py
"""Infrastructure layer: storage, caching, locking, dispatch, messaging"""
