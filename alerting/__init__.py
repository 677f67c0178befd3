"""On-call escalation and multi-channel alerting engine."""
