"""
Players — gateways to the device that actually renders audio.

There is ONE paired appliance per session.  appliance.py sends it commands
and pulls its status; when it is unreachable (or the user picks the phone)
the controller falls back to lib/local_engine.py.

Current players:
  appliance.py  — crib-side playback appliance over HTTP/JSON
"""

from .appliance import ApplianceClient

__all__ = ["ApplianceClient"]
