"""版本信息"""

__version__ = "0.1.0"
__author__ = "qbtree"
__description__ = "题库分类树管理引擎（物化路径）"
