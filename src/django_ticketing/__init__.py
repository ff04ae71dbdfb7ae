"""Coupon reservation and checkout core for event registration."""
