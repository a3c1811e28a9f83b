# Inbound telemetry stream
from .redis_stream import RedisStreamConsumer

__all__ = ["RedisStreamConsumer"]
