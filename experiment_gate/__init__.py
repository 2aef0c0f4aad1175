"""
实验开关服务

根据远程配置、本地持久化状态与用户行为（文件保存事件）判定实验是否生效。
"""

__version__ = "1.0.0"
