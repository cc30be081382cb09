"""Domain services: workflow store, reviewer roster, approval engine, metrics, notifications."""
