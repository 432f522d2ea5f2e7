"""Slot search over a business's working hours and existing bookings"""
