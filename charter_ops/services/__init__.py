"""
Supabase backed services: booking persistence and shared sequence storage.
"""
