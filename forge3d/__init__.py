"""
forge3d - asynchronous 3D generation job orchestration.
"""

__version__ = "0.1.0"
