from .redis_pubsub import RedisPubSubTransport

__all__ = ["RedisPubSubTransport"]
