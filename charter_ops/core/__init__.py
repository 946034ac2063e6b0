"""
Booking data model core: booking number generation and form/storage schema mapping.
"""
