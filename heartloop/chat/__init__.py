"""
Agent Module

Message model, agent loop and the policy pieces it consults.
"""
