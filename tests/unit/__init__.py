"""
Unit Tests Package

Domain models, strategies and infrastructure components tested in
isolation, with mocks standing in for collaborators.
"""
