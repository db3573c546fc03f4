"""Background services: orchestration, alerting, seeding and leader election."""
