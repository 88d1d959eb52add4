"""
Configuration, storage and shared record types.
"""
