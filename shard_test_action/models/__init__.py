"""Data structures shared by the coordinator, queue and agents."""
