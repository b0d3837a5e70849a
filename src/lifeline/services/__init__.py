"""Lifeline services"""
