"""
Dynamic Position Module

Multi-tier position execution, fill detection and dynamic stop-loss
management for leveraged futures positions.
"""
