"""
Dashboard API package initialization
"""
