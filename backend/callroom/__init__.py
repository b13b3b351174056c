"""Room-code audio/video calling.

Modules:
    webrtc: Room registry and signaling relay (server side)
    client: Signaling channel, connection negotiator and session controller
"""
