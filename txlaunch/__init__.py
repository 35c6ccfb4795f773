"""SkyRL tx 服务在 GPU 主机上的探测、配置解析与启动工具。"""

__version__ = "0.1.0"
