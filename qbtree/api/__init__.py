"""HTTP 接口模块

使用示例:
    from fastapi import FastAPI
    from qbtree.api import create_tree_router
    from qbtree.exceptions import register_exception_handlers
    from qbtree.tree import create_tree_services

    services = create_tree_services(create_tables=True)
    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(
        create_tree_router(services.engine, services.queries),
        prefix="/api/v1/category",
        tags=["题库分类"],
    )
"""

from .tree_api import BulkDeleteRequest, create_tree_router

__all__ = ["create_tree_router", "BulkDeleteRequest"]
