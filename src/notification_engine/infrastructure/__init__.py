"""Notification Delivery Engine - Infrastructure Layer."""
