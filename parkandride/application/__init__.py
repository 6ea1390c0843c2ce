# File: parkandride/application/__init__.py
"""Application layer: use-case services and DTOs"""
