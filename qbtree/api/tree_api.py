"""
分类树 HTTP 接口

使用动词风格路由，只使用 GET 和 POST 请求。

- API 层只负责参数解析和响应包装
- 业务规则全部在 TreeEngine / QueryService 中
- TreeException 直接抛出，由 register_exception_handlers 注册的处理器转换为统一响应
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Query
from pydantic import BaseModel, Field

from qbtree.response import ItemResponse, OkResponse, Resp
from qbtree.tree import (
    BulkResult,
    ChildStrategy,
    CopyResult,
    CopySpec,
    CreateSpec,
    MoveSpec,
    QueryService,
    ReorderSpec,
    TreeEngine,
    TreeNode,
    UpdateSpec,
)


class BulkDeleteRequest(BaseModel):
    """批量删除请求"""
    ids: List[int] = Field(description="要删除的节点ID列表")
    cascade: bool = Field(default=False, description="是否级联删除子树")
    hard: Optional[bool] = Field(default=None, description="是否物理删除，为空使用配置")
    children: Optional[ChildStrategy] = Field(default=None, description="子节点处理方式，为空由 cascade 决定")


def _bulk_response(result: BulkResult, action: str):
    if result.all_succeeded:
        return Resp.OK(data=result, message=f"批量{action}成功")
    details = [f"第 {item.index} 项: {item.error}" for item in result.items if not item.success]
    return Resp.Warning(
        message=f"批量{action}部分失败: 成功 {result.success_count}, 失败 {result.failure_count}",
        data=result,
        msg_details=details,
    )


def create_tree_router(engine: TreeEngine, queries: QueryService) -> APIRouter:
    """创建分类树路由

    Args:
        engine: 分类树引擎
        queries: 查询服务

    Returns:
        APIRouter

    生成的路由:
        GET  /get            - 获取节点
        GET  /get-by-code    - 按编码获取节点
        GET  /children       - 获取子节点（不传 parent_id 返回根节点）
        GET  /parent         - 获取父节点
        GET  /ancestors      - 获取祖先（根 -> 父）
        GET  /descendants    - 获取子孙
        GET  /siblings       - 获取兄弟节点
        GET  /find-by-path   - 按路径查找
        GET  /search         - 搜索
        GET  /tree           - 获取嵌套树
        GET  /breadcrumbs    - 获取面包屑
        GET  /statistics     - 统计
        GET  /integrity      - 完整性检查
        GET  /export         - 导出
        POST /create         - 创建节点
        POST /update         - 更新节点
        POST /move           - 移动节点
        POST /reorder        - 重排兄弟节点
        POST /copy           - 复制节点（可含子树）
        POST /delete         - 删除节点
        POST /restore        - 恢复节点
        POST /bulk-create    - 批量创建
        POST /bulk-move      - 批量移动
        POST /bulk-delete    - 批量删除
        POST /import         - 导入
        POST /rebuild-paths  - 重建路径
    """
    router = APIRouter()

    # ==================== 查询接口 ====================

    @router.get("/get", response_model=ItemResponse[TreeNode], summary="获取节点")
    def get_node(node_id: int = Query(..., description="节点ID")):
        return Resp.OK(data=queries.get_node(node_id))

    @router.get("/get-by-code", response_model=ItemResponse[TreeNode], summary="按编码获取节点")
    def get_node_by_code(code: str = Query(..., description="节点编码")):
        node = queries.get_by_code(code)
        if node is None:
            return Resp.NotFound(message=f"节点不存在: {code}")
        return Resp.OK(data=node)

    @router.get("/children", response_model=ItemResponse[List[TreeNode]], summary="获取子节点")
    def get_children(parent_id: Optional[int] = Query(None, description="父节点ID，为空返回根节点")):
        return Resp.OK(data=queries.get_children(parent_id))

    @router.get("/parent", response_model=OkResponse, summary="获取父节点")
    def get_parent(node_id: int = Query(..., description="节点ID")):
        return Resp.OK(data=queries.get_parent(node_id))

    @router.get("/ancestors", response_model=ItemResponse[List[TreeNode]], summary="获取祖先节点")
    def get_ancestors(node_id: int = Query(..., description="节点ID")):
        return Resp.OK(data=queries.get_ancestors(node_id))

    @router.get("/descendants", response_model=ItemResponse[List[TreeNode]], summary="获取子孙节点")
    def get_descendants(
        node_id: int = Query(..., description="节点ID"),
        max_depth: Optional[int] = Query(None, ge=0, description="相对深度限制"),
    ):
        return Resp.OK(data=queries.get_descendants(node_id, max_depth))

    @router.get("/siblings", response_model=ItemResponse[List[TreeNode]], summary="获取兄弟节点")
    def get_siblings(node_id: int = Query(..., description="节点ID")):
        return Resp.OK(data=queries.get_siblings(node_id))

    @router.get("/find-by-path", response_model=ItemResponse[TreeNode], summary="按路径查找节点")
    def find_by_path(path: str = Query(..., description="节点完整路径，如 /1/4/10/")):
        node = queries.find_by_path(path)
        if node is None:
            return Resp.NotFound(message=f"路径不存在: {path}")
        return Resp.OK(data=node)

    @router.get("/search", response_model=ItemResponse[List[TreeNode]], summary="搜索节点")
    def search(
        keyword: str = Query(..., description="关键字（名称或编码）"),
        max_results: Optional[int] = Query(None, ge=1, le=500, description="最大返回条数"),
    ):
        return Resp.OK(data=queries.search(keyword, max_results))

    @router.get("/tree", response_model=OkResponse, summary="获取嵌套树")
    def get_tree(
        root_id: Optional[int] = Query(None, description="子树根节点ID，为空返回整棵树"),
        max_depth: Optional[int] = Query(None, ge=0, description="层数限制"),
    ):
        return Resp.OK(data=queries.get_tree(root_id, max_depth))

    @router.get("/breadcrumbs", response_model=OkResponse, summary="获取面包屑")
    def get_breadcrumbs(node_id: int = Query(..., description="节点ID")):
        return Resp.OK(data=queries.get_breadcrumbs(node_id))

    @router.get("/statistics", response_model=OkResponse, summary="分类树统计")
    def get_statistics():
        return Resp.OK(data=queries.get_statistics())

    @router.get("/integrity", response_model=OkResponse, summary="完整性检查")
    def check_integrity():
        report = engine.validate_integrity()
        if report.is_valid:
            return Resp.OK(data=report, message="完整性检查通过")
        return Resp.Warning(message="完整性检查发现问题", data=report, msg_details=report.issues)

    @router.get("/export", response_model=OkResponse, summary="导出分类树")
    def export_tree(root_id: Optional[int] = Query(None, description="子树根节点ID，为空导出整棵树")):
        return Resp.OK(data=engine.export_tree(root_id))

    # ==================== 写入接口 ====================

    @router.post("/create", response_model=ItemResponse[TreeNode], summary="创建节点")
    def create_node(data: CreateSpec):
        return Resp.OK(data=engine.create_node(data), message="创建成功")

    @router.post("/update", response_model=ItemResponse[TreeNode], summary="更新节点")
    def update_node(
        data: UpdateSpec,
        node_id: int = Query(..., description="节点ID"),
    ):
        return Resp.OK(data=engine.update_node(node_id, data), message="更新成功")

    @router.post("/move", response_model=OkResponse, summary="移动节点")
    def move_node(data: MoveSpec):
        moved = engine.move_node(data)
        return Resp.OK(data={"id": data.id, "moved": moved}, message="移动成功" if moved else "位置未变化")

    @router.post("/reorder", response_model=OkResponse, summary="重排兄弟节点")
    def reorder_siblings(data: ReorderSpec):
        engine.reorder_siblings(data)
        return Resp.OK(data={"parent_id": data.parent_id, "ordered_ids": data.ordered_ids}, message="排序成功")

    @router.post("/copy", response_model=ItemResponse[CopyResult], summary="复制节点")
    def copy_node(data: CopySpec):
        result = engine.copy_node(data)
        return Resp.OK(data=result, message=f"复制成功: 共 {result.copied_count} 个节点")

    @router.post("/delete", response_model=OkResponse, summary="删除节点")
    def delete_node(
        node_id: int = Query(..., description="节点ID"),
        cascade: bool = Query(False, description="是否级联删除子树"),
        hard: Optional[bool] = Query(None, description="是否物理删除，为空使用配置"),
        children: Optional[ChildStrategy] = Query(None, description="子节点处理方式，为空由 cascade 决定"),
    ):
        deleted = engine.delete_node(node_id, cascade=cascade, hard=hard, children=children)
        return Resp.OK(data={"id": node_id, "deleted": deleted}, message="删除成功")

    @router.post("/restore", response_model=ItemResponse[TreeNode], summary="恢复节点")
    def restore_node(
        node_id: int = Query(..., description="节点ID"),
        cascade: bool = Query(False, description="是否同时恢复同批删除的子孙"),
    ):
        return Resp.OK(data=engine.restore_node(node_id, cascade=cascade), message="恢复成功")

    @router.post("/bulk-create", response_model=OkResponse, summary="批量创建")
    def bulk_create(data: List[CreateSpec]):
        return _bulk_response(engine.bulk_create(data), "创建")

    @router.post("/bulk-move", response_model=OkResponse, summary="批量移动")
    def bulk_move(data: List[MoveSpec]):
        return _bulk_response(engine.bulk_move(data), "移动")

    @router.post("/bulk-delete", response_model=OkResponse, summary="批量删除")
    def bulk_delete(data: BulkDeleteRequest):
        return _bulk_response(engine.bulk_delete(data.ids, cascade=data.cascade, hard=data.hard, children=data.children), "删除")

    @router.post("/import", response_model=OkResponse, summary="导入分类树")
    def import_tree(
        data: Dict[str, Any] = Body(..., description="导出格式的数据"),
        parent_id: Optional[int] = Query(None, description="挂载的父节点ID，为空导入为根节点"),
    ):
        result = engine.import_tree(data, parent_id)
        return Resp.OK(data=result, message=f"导入完成: 创建 {result.created_count} 个节点")

    @router.post("/rebuild-paths", response_model=OkResponse, summary="重建路径")
    def rebuild_paths():
        changed = engine.rebuild_paths()
        return Resp.OK(data={"changed": changed}, message="路径重建完成")

    return router


__all__ = ["create_tree_router", "BulkDeleteRequest"]
