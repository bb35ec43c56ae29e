"""
Lullaby playback sync.

Keeps one playback session consistent between the app, the crib-side
playback appliance and the "now playing" notification.  Start with
``lullaby-player`` (lullaby.server:main).
"""

__version__ = "1.0.0"
