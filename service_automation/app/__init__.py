"""
Automation service application.
"""
