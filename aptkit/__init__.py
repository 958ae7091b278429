"""
aptkit - Package transaction engine for dpkg based systems

Drives a complete install/remove transaction:
- Plan building on top of an arena-indexed dependency cache
- Essential package and trust checks before anything destructive
- Supervision of the installer child with structured progress events
"""

__version__ = "0.1.0"
__author__ = "aptkit contributors"
