"""Bitcoin node metrics exporter for Prometheus."""

__version__ = "1.0.0"
