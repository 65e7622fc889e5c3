"""
Budget-gated, cached menu image generation.
"""
