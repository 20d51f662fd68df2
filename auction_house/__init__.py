"""Auction house backend: lifecycle, bidding and realtime notifications."""
