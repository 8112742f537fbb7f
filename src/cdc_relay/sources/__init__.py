"""Change sources: the watermark poller and logical replication supervision."""
