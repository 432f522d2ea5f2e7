"""Inbound SMS conversations: intent routing and the reschedule dialogue"""
