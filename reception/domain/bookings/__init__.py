"""Bookings: data access and staff status updates"""
