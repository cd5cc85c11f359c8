"""Extension modules; each exposes ``ROUTES``."""
