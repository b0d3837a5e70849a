"""
Core module for Lifeline

Contains configuration management, logging, persistence and geo helpers.
"""
