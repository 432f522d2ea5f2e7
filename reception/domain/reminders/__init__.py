"""Booking reminders: idempotent seeding and the delivery sweep"""
