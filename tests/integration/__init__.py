"""
Integration tests for the livecount HTTP service.

Twitch endpoints and the EventSub socket are faked in-process; no network is needed.
"""
