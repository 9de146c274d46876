"""Scheduled transaction pipeline: router, synchronizer, queue, processor and executor."""
