"""
收敛引擎: 系统探测、备份、仓库格式迁移、幂等补丁与编排
"""
