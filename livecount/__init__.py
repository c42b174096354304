"""
livecount - real-time follower and subscriber counts for stream overlays
Ingests Twitch EventSub notifications over WebSocket and keeps live totals
"""

__version__ = "0.1.0"
