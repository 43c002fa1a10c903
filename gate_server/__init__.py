"""
Gate Access Server
Face recognition access control with a serial gate controller
"""
__version__ = "1.0.0"
