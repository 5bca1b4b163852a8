"""
Export transactions from web-only bank portals by driving a headless browser through login and MFA.
"""

__version__ = "0.1.0"
