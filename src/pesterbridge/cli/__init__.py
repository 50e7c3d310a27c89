#
# src/pesterbridge/cli/__init__.py
#
"""
Command line interface for pesterbridge.
"""

# 🔼⚙️
