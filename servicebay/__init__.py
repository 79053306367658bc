"""ServiceBay: service-bay productivity and efficiency-bonus tracking API."""

__version__ = "1.0.0"
