"""Weather telemetry aggregation over ZeroMQ: aggregators, load balancer and clients."""

__version__ = '0.1.0'
