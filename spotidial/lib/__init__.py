"""Shared plumbing: configuration, MQTT transport, systemd watchdog."""
