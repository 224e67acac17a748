"""Country-based network access policy from geo-IP CIDR feeds."""

__version__ = "0.1.0"
