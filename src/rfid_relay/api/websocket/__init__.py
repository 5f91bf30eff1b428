"""
WebSocket support services for the relay server.
"""
