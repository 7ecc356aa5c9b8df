"""Host and process energy/CPU telemetry agent."""
