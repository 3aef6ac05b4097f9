"""fieldbot - conversation engine for the field-service ticketing assistant."""

__version__ = "0.1.0"
