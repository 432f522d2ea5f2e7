"""Reschedule negotiations: one staff-facing tracking row per booking"""
