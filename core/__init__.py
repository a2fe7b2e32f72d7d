"""Core messaging definitions for the subathon timer service."""
