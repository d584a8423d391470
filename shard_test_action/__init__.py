"""Lease-based distribution of test cases across parallel CI agents."""
