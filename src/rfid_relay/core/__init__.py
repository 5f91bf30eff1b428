"""
Core module for the RFID relay: logging, exceptions and shutdown handling.
"""
