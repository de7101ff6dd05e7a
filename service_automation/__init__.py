"""
Automation service package.
"""
