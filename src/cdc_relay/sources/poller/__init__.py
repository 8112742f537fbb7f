"""Timestamp-watermark change poller."""
