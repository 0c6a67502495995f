"""MedQueue appointment and queue scheduling engine."""
