"""
RFID Relay
==========
Realtime relay between one RFID reader device and any number of browser viewers.
"""

__version__ = "1.0.0"
