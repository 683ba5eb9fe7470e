"""Freight document intelligence and shipment reconciliation engine."""

__version__ = "0.4.0"
