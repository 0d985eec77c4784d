"""
Group-Buy Service Component Tests
"""
