"""
Google Meet Relay - in-session meeting observer.

This module provides:
- Decoding of the meeting client's undocumented side-channel messages
- Reconciled roster, device output and active video feed state
- Live caption forwarding
- Viewport compositing and audio mixing into an encoded media stream
- A framed websocket channel carrying state and media to a collector
"""

from tool_modules.common import PROJECT_ROOT

__project_root__ = PROJECT_ROOT
__version__ = "0.1.0"
