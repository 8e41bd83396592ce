"""
Duty Verification & Settlement Engine
Service layer.
"""
