# File: parkandride/domain/__init__.py
"""Domain layer: models, aggregates, strategies, credentials, errors"""
