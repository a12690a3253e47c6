"""SQS -> service forwarder for processing trigger events."""
