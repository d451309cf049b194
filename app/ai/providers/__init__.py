"""Provider implementations."""

from app.ai.providers.worldlabs import ESTIMATED_TIMES, PollResult, ServiceStatus, WorldLabsClient

__all__ = ["ESTIMATED_TIMES", "PollResult", "ServiceStatus", "WorldLabsClient"]
