"""HTTP 接口"""
