"""
工具模块 (utils)
"""
