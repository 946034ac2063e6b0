"""
Adapters converting bookings to and from external formats (iCalendar).
"""
