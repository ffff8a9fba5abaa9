"""
API Package

Routes, models and dependencies of the operational API.
"""
