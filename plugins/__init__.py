"""NATS plugins for the subathon timer service."""
