"""Test suite for the Park-and-Ride Booking Engine"""
