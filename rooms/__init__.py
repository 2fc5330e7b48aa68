"""Video room provisioning."""

from .video import TwilioVideoRooms

__all__ = ["TwilioVideoRooms"]
