"""
lib

Library code for the subathon timer service.

Subpackages:
- timer: countdown engine, settings, subscription translation,
  persistence and broadcast delivery policy
"""

__version__ = "1.0.0"
