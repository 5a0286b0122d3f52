"""
Core Kernel Module

Foundational utilities shared by the tax engine.

Components:
- hashing: SHA256 audit logic for immutable records

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

__all__ = ['hashing']
