"""TreeEngine 结构修改操作测试"""

import pytest

from qbtree.config import TreeSettings
from qbtree.exceptions import (
    CycleError,
    DuplicateCodeError,
    ErrorCode,
    HasChildrenError,
    NodeNotFoundError,
    ParentNotFoundError,
    ValidationError,
)
from qbtree.tree import (
    ChildStrategy,
    CopySpec,
    CreateSpec,
    MoveSpec,
    NodeType,
    ReorderSpec,
    TreeEngine,
    UpdateSpec,
)


# ==================== 创建 ====================

class TestCreateNode:

    def test_create_root(self, engine):
        node = engine.create_node(None, "数学", "MATH", "SUBJECT", description="  数学科目 ")

        assert node.id is not None
        assert node.parent_id is None
        assert node.path == "/"
        assert node.depth == 0
        assert node.order == 0
        assert node.node_type == NodeType.SUBJECT
        assert node.description == "数学科目"
        assert node.created_at is not None
        assert node.is_deleted is False

    def test_create_child_path(self, sample_tree):
        s = sample_tree
        assert s["ALG"].path == f"/{s['MATH'].id}/"
        assert s["ALG"].depth == 1
        assert s["QUAD-ROOTS"].path == f"/{s['MATH'].id}/{s['ALG'].id}/{s['QUAD'].id}/"
        assert s["QUAD-ROOTS"].depth == 3

    def test_append_to_end(self, sample_tree, child_codes):
        assert child_codes(sample_tree["MATH"].id) == ["ALG", "GEO"]
        assert child_codes(None) == ["MATH", "PHYS"]

    def test_insert_shifts_later_siblings(self, sample_tree, engine, child_codes):
        math = sample_tree["MATH"]
        node = engine.create_node(math.id, "概率", "PROB", "CHAPTER", desired_order=1)

        assert node.order == 1
        assert child_codes(math.id) == ["ALG", "PROB", "GEO"]

    def test_insert_at_end_position(self, sample_tree, engine, child_codes):
        math = sample_tree["MATH"]
        engine.create_node(math.id, "统计", "STAT", "CHAPTER", desired_order=2)
        assert child_codes(math.id) == ["ALG", "GEO", "STAT"]

    @pytest.mark.parametrize("order", [3, -1])
    def test_order_out_of_range(self, sample_tree, engine, child_codes, order):
        with pytest.raises(ValidationError):
            engine.create_node(sample_tree["MATH"].id, "统计", "STAT", "CHAPTER", desired_order=order)
        assert child_codes(sample_tree["MATH"].id) == ["ALG", "GEO"]

    def test_duplicate_code(self, sample_tree, engine):
        with pytest.raises(DuplicateCodeError) as exc_info:
            engine.create_node(None, "另一个数学", "MATH", "SUBJECT")
        assert exc_info.value.code == ErrorCode.DUPLICATE_CODE
        assert exc_info.value.extra["node_code"] == "MATH"

    def test_soft_deleted_code_stays_reserved(self, sample_tree, engine):
        engine.delete_node(sample_tree["GEO"].id)
        with pytest.raises(DuplicateCodeError):
            engine.create_node(sample_tree["MATH"].id, "几何", "GEO", "CHAPTER")

    @pytest.mark.parametrize("name,code", [("", "X1"), ("   ", "X1"), ("名称", ""), ("名称", None)])
    def test_blank_name_or_code(self, engine, name, code):
        with pytest.raises(ValidationError):
            engine.create_node(None, name, code, "SUBJECT")

    def test_too_long_code(self, engine):
        with pytest.raises(ValidationError):
            engine.create_node(None, "名称", "C" * 51, "SUBJECT")

    def test_unknown_type(self, engine):
        with pytest.raises(ValidationError):
            engine.create_node(None, "名称", "X1", "LESSON")

    def test_missing_parent(self, engine):
        with pytest.raises(ParentNotFoundError):
            engine.create_node(999, "名称", "X1", "CHAPTER")

    def test_deleted_parent(self, sample_tree, engine):
        engine.delete_node(sample_tree["GEO"].id)
        with pytest.raises(ParentNotFoundError):
            engine.create_node(sample_tree["GEO"].id, "三角形", "TRI", "TOPIC")

    def test_parent_by_code(self, sample_tree, engine):
        node = engine.create_node(name="三角形", code="TRI", node_type="TOPIC", parent_code="GEO")
        assert node.parent_id == sample_tree["GEO"].id

    def test_parent_id_and_code_must_agree(self, sample_tree, engine):
        with pytest.raises(ValidationError):
            engine.create_node(sample_tree["ALG"].id, "三角形", "TRI", "TOPIC", parent_code="GEO")

    def test_unknown_parent_code(self, engine):
        with pytest.raises(ParentNotFoundError):
            engine.create_node(name="三角形", code="TRI", node_type="TOPIC", parent_code="NOPE")

    def test_leaf_type_rejects_children(self, sample_tree, engine):
        with pytest.raises(ValidationError):
            engine.create_node(sample_tree["QUAD-ROOTS"].id, "判别式", "DISC", "TOPIC")

    def test_subject_only_at_root(self, sample_tree, engine):
        with pytest.raises(ValidationError):
            engine.create_node(sample_tree["MATH"].id, "化学", "CHEM", "SUBJECT")

    def test_global_max_depth(self, store):
        shallow = TreeEngine(store, TreeSettings(max_depth=2, conflict_retry_delay=0))
        root = shallow.create_node(None, "数学", "MATH", "SUBJECT")
        chapter = shallow.create_node(root.id, "代数", "ALG", "CHAPTER")
        topic = shallow.create_node(chapter.id, "方程", "EQ", "TOPIC")

        assert topic.depth == 2
        with pytest.raises(ValidationError):
            shallow.create_node(topic.id, "一次方程", "LIN", "SUBTOPIC")

    def test_accepts_create_spec(self, sample_tree, engine):
        spec = CreateSpec(parent_id=sample_tree["GEO"].id, name="圆", code="CIRCLE", node_type="TOPIC", order=0)
        node = engine.create_node(spec)
        assert node.parent_id == sample_tree["GEO"].id
        assert node.order == 0


# ==================== 更新 ====================

class TestUpdateNode:

    def test_update_metadata(self, sample_tree, engine):
        alg = sample_tree["ALG"]
        node = engine.update_node(alg.id, {"name": "代数基础", "description": "初中代数"})

        assert node.name == "代数基础"
        assert node.description == "初中代数"
        assert (node.path, node.order, node.parent_id) == (alg.path, alg.order, alg.parent_id)

    def test_update_with_spec(self, sample_tree, engine):
        node = engine.update_node(sample_tree["ALG"].id, UpdateSpec(code="ALGEBRA"))
        assert node.code == "ALGEBRA"

    def test_same_code_is_allowed(self, sample_tree, engine):
        node = engine.update_node(sample_tree["ALG"].id, {"code": "ALG"})
        assert node.code == "ALG"

    def test_duplicate_code(self, sample_tree, engine):
        with pytest.raises(DuplicateCodeError):
            engine.update_node(sample_tree["ALG"].id, {"code": "GEO"})

    @pytest.mark.parametrize("fields", [{"path": "/9/"}, {"order": 3}, {"parent_id": 1}])
    def test_structural_fields_rejected(self, sample_tree, engine, fields):
        with pytest.raises(ValidationError):
            engine.update_node(sample_tree["ALG"].id, fields)

    def test_blank_name_rejected(self, sample_tree, engine):
        with pytest.raises(ValidationError):
            engine.update_node(sample_tree["ALG"].id, {"name": " "})

    def test_type_change_to_leaf_with_children(self, sample_tree, engine):
        with pytest.raises(ValidationError):
            engine.update_node(sample_tree["QUAD"].id, {"node_type": "OBJECTIVE"})

    def test_type_change_to_leaf_without_children(self, sample_tree, engine):
        node = engine.update_node(sample_tree["LIN"].id, {"node_type": "objective"})
        assert node.node_type == NodeType.OBJECTIVE

    def test_type_change_respects_depth_limit(self, sample_tree, engine):
        with pytest.raises(ValidationError):
            engine.update_node(sample_tree["ALG"].id, {"node_type": "SUBJECT"})

    def test_missing_node(self, engine):
        with pytest.raises(NodeNotFoundError):
            engine.update_node(999, {"name": "名称"})


# ==================== 移动 ====================

class TestMoveNode:

    def test_move_subtree_to_other_parent(self, sample_tree, engine, queries, child_codes):
        s = sample_tree
        assert engine.move_node(s["ALG"].id, new_parent_id=s["PHYS"].id) is True

        assert child_codes(s["MATH"].id) == ["GEO"]
        assert child_codes(s["PHYS"].id) == ["MECH", "ALG"]

        alg = queries.get_node(s["ALG"].id)
        assert alg.path == f"/{s['PHYS'].id}/"
        assert alg.depth == 1
        roots = queries.get_node(s["QUAD-ROOTS"].id)
        assert roots.path == f"/{s['PHYS'].id}/{s['ALG'].id}/{s['QUAD'].id}/"
        assert roots.depth == 3
        assert [a.code for a in queries.get_ancestors(roots.id)] == ["PHYS", "ALG", "QUAD"]
        assert engine.validate_integrity().is_valid

    def test_move_with_position(self, sample_tree, engine, child_codes):
        s = sample_tree
        engine.move_node(s["ALG"].id, new_parent_id=s["PHYS"].id, new_order=0)
        assert child_codes(s["PHYS"].id) == ["ALG", "MECH"]

    def test_move_to_root(self, sample_tree, engine, queries, child_codes):
        s = sample_tree
        engine.move_node(s["ALG"].id, new_parent_id=None)

        assert child_codes(None) == ["MATH", "PHYS", "ALG"]
        assert queries.get_node(s["LIN"].id).path == f"/{s['ALG'].id}/"
        assert queries.get_node(s["QUAD-ROOTS"].id).depth == 2

    def test_move_deeper(self, sample_tree, engine, queries):
        s = sample_tree
        engine.move_node(s["QUAD"].id, new_parent_id=s["GEO"].id)
        engine.move_node(s["GEO"].id, new_parent_id=s["MECH"].id)

        roots = queries.get_node(s["QUAD-ROOTS"].id)
        assert roots.path == f"/{s['PHYS'].id}/{s['MECH'].id}/{s['GEO'].id}/{s['QUAD'].id}/"
        assert roots.depth == 4
        assert engine.validate_integrity().is_valid

    def test_same_parent_without_order_is_noop(self, sample_tree, engine, child_codes):
        s = sample_tree
        assert engine.move_node(s["ALG"].id, new_parent_id=s["MATH"].id) is False
        assert child_codes(s["MATH"].id) == ["ALG", "GEO"]

    def test_reposition_within_group(self, sample_tree, engine, make_node, child_codes):
        s = sample_tree
        make_node(s["MATH"], code="PROB", node_type="CHAPTER")
        make_node(s["MATH"], code="STAT", node_type="CHAPTER")

        assert engine.move_node(s["ALG"].id, s["MATH"].id, new_order=2) is True
        assert child_codes(s["MATH"].id) == ["GEO", "PROB", "ALG", "STAT"]

        assert engine.move_node(s["ALG"].id, s["MATH"].id, new_order=0) is True
        assert child_codes(s["MATH"].id) == ["ALG", "GEO", "PROB", "STAT"]

    def test_reposition_same_order_is_noop(self, sample_tree, engine):
        s = sample_tree
        assert engine.move_node(s["GEO"].id, s["MATH"].id, new_order=1) is False

    def test_reposition_out_of_range(self, sample_tree, engine):
        s = sample_tree
        with pytest.raises(ValidationError):
            engine.move_node(s["GEO"].id, s["MATH"].id, new_order=2)

    def test_new_order_out_of_range(self, sample_tree, engine):
        s = sample_tree
        with pytest.raises(ValidationError):
            engine.move_node(s["ALG"].id, s["PHYS"].id, new_order=2)

    def test_move_under_self(self, sample_tree, engine):
        with pytest.raises(CycleError):
            engine.move_node(sample_tree["ALG"].id, new_parent_id=sample_tree["ALG"].id)

    @pytest.mark.parametrize("target", ["ALG", "LIN", "QUAD", "QUAD-ROOTS", "GEO"])
    def test_move_into_descendant_always_fails(self, sample_tree, engine, queries, target):
        s = sample_tree
        before = [(n.id, n.path, n.order) for n in queries.get_descendants(s["MATH"].id)]

        with pytest.raises(CycleError):
            engine.move_node(s["MATH"].id, new_parent_id=s[target].id)

        assert [(n.id, n.path, n.order) for n in queries.get_descendants(s["MATH"].id)] == before

    def test_move_under_leaf_type(self, sample_tree, engine):
        s = sample_tree
        with pytest.raises(ValidationError):
            engine.move_node(s["GEO"].id, new_parent_id=s["QUAD-ROOTS"].id)

    def test_subject_cannot_move_below_root(self, sample_tree, engine):
        s = sample_tree
        with pytest.raises(ValidationError):
            engine.move_node(s["PHYS"].id, new_parent_id=s["MATH"].id)

    def test_deepest_descendant_checked(self, sample_tree, store, queries):
        s = sample_tree
        shallow = TreeEngine(store, TreeSettings(max_depth=3, conflict_retry_delay=0))

        with pytest.raises(ValidationError):
            shallow.move_node(s["ALG"].id, new_parent_id=s["GEO"].id)
        assert queries.get_node(s["ALG"].id).parent_id == s["MATH"].id

    def test_missing_node(self, engine):
        with pytest.raises(NodeNotFoundError):
            engine.move_node(999, new_parent_id=None)

    def test_missing_parent(self, sample_tree, engine):
        with pytest.raises(ParentNotFoundError):
            engine.move_node(sample_tree["ALG"].id, new_parent_id=999)

    def test_deleted_parent(self, sample_tree, engine):
        s = sample_tree
        engine.delete_node(s["MECH"].id)
        with pytest.raises(ParentNotFoundError):
            engine.move_node(s["ALG"].id, new_parent_id=s["MECH"].id)

    def test_soft_deleted_descendants_follow(self, sample_tree, engine, raw_node):
        s = sample_tree
        engine.delete_node(s["LIN"].id)
        engine.move_node(s["ALG"].id, new_parent_id=s["PHYS"].id)

        lin = raw_node(s["LIN"].id)
        assert lin.is_deleted
        assert lin.path == f"/{s['PHYS'].id}/{s['ALG'].id}/"
        assert engine.validate_integrity().is_valid

    def test_accepts_move_spec(self, sample_tree, engine, child_codes):
        s = sample_tree
        assert engine.move_node(MoveSpec(id=s["GEO"].id, new_parent_id=s["PHYS"].id, new_order=0))
        assert child_codes(s["PHYS"].id) == ["GEO", "MECH"]


# ==================== 重排 ====================

class TestReorderSiblings:

    def test_reorder(self, sample_tree, engine, child_codes):
        s = sample_tree
        assert engine.reorder_siblings(s["ALG"].id, [s["QUAD"].id, s["LIN"].id]) is True
        assert child_codes(s["ALG"].id) == ["QUAD", "LIN"]

    def test_reorder_roots(self, sample_tree, engine, child_codes):
        s = sample_tree
        engine.reorder_siblings(None, [s["PHYS"].id, s["MATH"].id])
        assert child_codes(None) == ["PHYS", "MATH"]

    def test_idempotent(self, sample_tree, engine, queries):
        s = sample_tree
        before = queries.get_children(s["ALG"].id)

        assert engine.reorder_siblings(s["ALG"].id, [n.id for n in before]) is True

        after = queries.get_children(s["ALG"].id)
        assert [(n.id, n.order, n.updated_at) for n in after] == [(n.id, n.order, n.updated_at) for n in before]

    @pytest.mark.parametrize("ids_of", [
        lambda s: [s["LIN"].id],                                     # 缺少节点
        lambda s: [s["LIN"].id, s["QUAD"].id, s["GEO"].id],          # 多出节点
        lambda s: [s["LIN"].id, s["LIN"].id, s["QUAD"].id],          # 重复节点
        lambda s: [],
    ])
    def test_invalid_set_changes_nothing(self, sample_tree, engine, child_codes, ids_of):
        s = sample_tree
        with pytest.raises(ValidationError):
            engine.reorder_siblings(s["ALG"].id, ids_of(s))
        assert child_codes(s["ALG"].id) == ["LIN", "QUAD"]

    def test_missing_parent(self, engine):
        with pytest.raises(ParentNotFoundError):
            engine.reorder_siblings(999, [])

    def test_duplicates_reported_for_long_list(self, sample_tree, engine, child_codes):
        s = sample_tree
        ids = list(range(10_000, 30_000)) + [10_042, 10_007, 10_042]

        with pytest.raises(ValidationError) as exc_info:
            engine.reorder_siblings(s["ALG"].id, ids)

        assert exc_info.value.details == ["重复ID: [10007, 10042]"]
        assert child_codes(s["ALG"].id) == ["LIN", "QUAD"]

    def test_accepts_reorder_spec(self, sample_tree, engine, child_codes):
        s = sample_tree
        engine.reorder_siblings(ReorderSpec(parent_id=s["MATH"].id, ordered_ids=[s["GEO"].id, s["ALG"].id]))
        assert child_codes(s["MATH"].id) == ["GEO", "ALG"]


# ==================== 删除 ====================

class TestDeleteNode:

    def test_soft_delete_leaf_closes_gap(self, sample_tree, engine, queries, raw_node, child_codes):
        s = sample_tree
        assert engine.delete_node(s["LIN"].id) == 1

        assert child_codes(s["ALG"].id) == ["QUAD"]
        with pytest.raises(NodeNotFoundError):
            queries.get_node(s["LIN"].id)
        assert queries.get_by_code("LIN") is None

        lin = raw_node(s["LIN"].id)
        assert lin.is_deleted is True

    def test_has_children(self, sample_tree, engine, child_codes):
        s = sample_tree
        with pytest.raises(HasChildrenError):
            engine.delete_node(s["ALG"].id)
        assert child_codes(s["MATH"].id) == ["ALG", "GEO"]

    def test_soft_cascade(self, sample_tree, engine, queries, raw_node, child_codes):
        s = sample_tree
        assert engine.delete_node(s["ALG"].id, cascade=True) == 4

        assert child_codes(s["MATH"].id) == ["GEO"]
        assert queries.get_descendants(s["MATH"].id)[0].code == "GEO"
        for code in ("ALG", "LIN", "QUAD", "QUAD-ROOTS"):
            record = raw_node(s[code].id)
            assert record.is_deleted is True
        assert engine.validate_integrity().is_valid

    def test_hard_cascade_frees_codes(self, sample_tree, engine, raw_node):
        s = sample_tree
        assert engine.delete_node(s["ALG"].id, cascade=True, hard=True) == 4

        assert raw_node(s["QUAD-ROOTS"].id) is None
        node = engine.create_node(s["MATH"].id, "代数", "ALG", "CHAPTER")
        assert node.order == 1

    def test_hard_cascade_includes_soft_deleted_descendants(self, sample_tree, engine, raw_node):
        s = sample_tree
        engine.delete_node(s["LIN"].id)

        assert engine.delete_node(s["ALG"].id, cascade=True, hard=True) == 4
        assert raw_node(s["LIN"].id) is None
        assert engine.validate_integrity().is_valid

    def test_hard_by_default_when_configured(self, sample_tree, store, raw_node):
        hard_engine = TreeEngine(store, TreeSettings(soft_delete=False, conflict_retry_delay=0))
        hard_engine.delete_node(sample_tree["GEO"].id)
        assert raw_node(sample_tree["GEO"].id) is None

    def test_missing_node(self, engine):
        with pytest.raises(NodeNotFoundError):
            engine.delete_node(999)

    def test_already_deleted(self, sample_tree, engine):
        engine.delete_node(sample_tree["GEO"].id)
        with pytest.raises(NodeNotFoundError):
            engine.delete_node(sample_tree["GEO"].id)


class TestDeleteChildStrategies:
    """删除节点时子节点上移"""

    def test_move_to_parent_takes_deleted_position(self, sample_tree, engine, queries, raw_node, child_codes):
        s = sample_tree
        assert engine.delete_node(s["ALG"].id, children=ChildStrategy.MOVE_TO_PARENT) == 1

        assert child_codes(s["MATH"].id) == ["LIN", "QUAD", "GEO"]
        assert raw_node(s["ALG"].id).is_deleted is True
        lin = queries.get_node(s["LIN"].id)
        assert (lin.parent_id, lin.path, lin.depth) == (s["MATH"].id, f"/{s['MATH'].id}/", 1)
        roots = queries.get_node(s["QUAD-ROOTS"].id)
        assert roots.path == f"/{s['MATH'].id}/{s['QUAD'].id}/"
        assert roots.depth == 2
        assert engine.validate_integrity().is_valid

    def test_move_to_root_appends_to_root_group(self, sample_tree, engine, queries, child_codes):
        s = sample_tree
        engine.delete_node(s["ALG"].id, children="move_to_root")

        assert child_codes(None) == ["MATH", "PHYS", "LIN", "QUAD"]
        assert child_codes(s["MATH"].id) == ["GEO"]
        quad = queries.get_node(s["QUAD"].id)
        assert (quad.parent_id, quad.path, quad.depth) == (None, "/", 0)
        assert queries.get_node(s["QUAD-ROOTS"].id).path == f"/{s['QUAD'].id}/"
        assert engine.validate_integrity().is_valid

    def test_promote_children_of_root(self, sample_tree, engine, child_codes):
        s = sample_tree
        engine.delete_node(s["MATH"].id, children="MOVE_TO_PARENT")

        assert child_codes(None) == ["ALG", "GEO", "PHYS"]
        assert child_codes(s["ALG"].id) == ["LIN", "QUAD"]
        assert engine.validate_integrity().is_valid

    def test_single_child_keeps_sibling_orders(self, sample_tree, engine, child_codes):
        s = sample_tree
        engine.delete_node(s["QUAD"].id, children=ChildStrategy.MOVE_TO_PARENT)

        assert child_codes(s["ALG"].id) == ["LIN", "QUAD-ROOTS"]
        assert engine.validate_integrity().is_valid

    def test_hard_delete_reparents_soft_deleted_children(self, sample_tree, engine, raw_node, child_codes):
        s = sample_tree
        engine.delete_node(s["LIN"].id)

        engine.delete_node(s["ALG"].id, hard=True, children=ChildStrategy.MOVE_TO_PARENT)

        assert raw_node(s["ALG"].id) is None
        lin = raw_node(s["LIN"].id)
        assert lin.is_deleted is True
        assert lin.parent_id == s["MATH"].id
        assert lin.path == f"/{s['MATH'].id}/"
        assert engine.validate_integrity().is_valid

        engine.restore_node(s["LIN"].id)
        assert child_codes(s["MATH"].id) == ["QUAD", "GEO", "LIN"]

    def test_leaf_behaves_like_plain_delete(self, sample_tree, engine, child_codes):
        s = sample_tree
        assert engine.delete_node(s["LIN"].id, children="move_to_root") == 1
        assert child_codes(s["ALG"].id) == ["QUAD"]
        assert child_codes(None) == ["MATH", "PHYS"]

    def test_explicit_prevent(self, sample_tree, engine):
        with pytest.raises(HasChildrenError):
            engine.delete_node(sample_tree["ALG"].id, children=ChildStrategy.PREVENT)

    def test_explicit_cascade(self, sample_tree, engine, child_codes):
        s = sample_tree
        assert engine.delete_node(s["ALG"].id, children="cascade") == 4
        assert child_codes(s["MATH"].id) == ["GEO"]

    def test_unknown_strategy(self, sample_tree, engine):
        with pytest.raises(ValidationError):
            engine.delete_node(sample_tree["ALG"].id, children="explode")

    def test_cascade_conflicts_with_promotion(self, sample_tree, engine, child_codes):
        with pytest.raises(ValidationError):
            engine.delete_node(sample_tree["ALG"].id, cascade=True, children="move_to_parent")
        assert child_codes(sample_tree["MATH"].id) == ["ALG", "GEO"]


# ==================== 复制 ====================

class TestCopyNode:

    def test_copy_subtree(self, sample_tree, engine, queries, child_codes):
        s = sample_tree
        result = engine.copy_node(s["ALG"].id, new_parent_id=s["PHYS"].id)

        assert result.copied_count == 4
        assert set(result.id_map) == {s[code].id for code in ("ALG", "LIN", "QUAD", "QUAD-ROOTS")}
        assert result.root.code == "ALG_COPY"
        assert result.root.name == "代数"
        assert result.root.parent_id == s["PHYS"].id
        assert child_codes(s["PHYS"].id) == ["MECH", "ALG_COPY"]
        assert child_codes(result.root.id) == ["LIN_COPY", "QUAD_COPY"]

        quad_copy = result.id_map[s["QUAD"].id]
        roots_copy = queries.get_node(result.id_map[s["QUAD-ROOTS"].id])
        assert roots_copy.path == f"/{s['PHYS'].id}/{result.root.id}/{quad_copy}/"
        assert roots_copy.depth == 3
        assert roots_copy.node_type == NodeType.OBJECTIVE

        assert child_codes(s["ALG"].id) == ["LIN", "QUAD"]
        assert engine.validate_integrity().is_valid

    def test_copy_single_node_with_position(self, sample_tree, engine, queries, child_codes):
        s = sample_tree
        result = engine.copy_node(
            s["ALG"].id,
            new_parent_id=s["MATH"].id,
            include_descendants=False,
            new_name="代数（副本）",
            new_order=0,
        )

        assert result.copied_count == 1
        assert result.root.name == "代数（副本）"
        assert child_codes(s["MATH"].id) == ["ALG_COPY", "ALG", "GEO"]
        assert queries.get_children(result.root.id) == []
        assert engine.validate_integrity().is_valid

    def test_copy_into_own_subtree(self, sample_tree, engine, child_codes):
        s = sample_tree
        result = engine.copy_node(s["ALG"].id, new_parent_id=s["QUAD"].id, new_order=0)

        assert result.copied_count == 4
        assert child_codes(s["QUAD"].id) == ["ALG_COPY", "QUAD-ROOTS"]
        assert child_codes(result.id_map[s["QUAD"].id]) == ["QUAD-ROOTS_COPY"]
        assert engine.validate_integrity().is_valid

    def test_copy_root_subject(self, sample_tree, engine, child_codes):
        result = engine.copy_node(sample_tree["MATH"].id, code_suffix="-2025")

        assert result.copied_count == 6
        assert child_codes(None) == ["MATH", "PHYS", "MATH-2025"]
        assert child_codes(result.root.id) == ["ALG-2025", "GEO-2025"]
        assert engine.validate_integrity().is_valid

    def test_soft_deleted_descendants_not_copied(self, sample_tree, engine, child_codes):
        s = sample_tree
        engine.delete_node(s["LIN"].id)

        result = engine.copy_node(s["ALG"].id, new_parent_id=s["PHYS"].id)

        assert result.copied_count == 3
        assert child_codes(result.root.id) == ["QUAD_COPY"]

    def test_duplicate_code_rolls_back(self, sample_tree, engine, child_codes):
        s = sample_tree
        engine.copy_node(s["ALG"].id, new_parent_id=s["PHYS"].id)

        with pytest.raises(DuplicateCodeError):
            engine.copy_node(s["ALG"].id, new_parent_id=s["MATH"].id)

        assert child_codes(s["MATH"].id) == ["ALG", "GEO"]
        assert engine.validate_integrity().is_valid

    def test_descendant_code_conflict_rolls_back(self, sample_tree, engine, child_codes):
        s = sample_tree
        engine.create_node(s["PHYS"].id, "占位", "QUAD_COPY", "CHAPTER")

        with pytest.raises(DuplicateCodeError):
            engine.copy_node(s["ALG"].id, new_parent_id=s["MATH"].id)

        assert child_codes(s["MATH"].id) == ["ALG", "GEO"]

    def test_subject_cannot_be_copied_below_root(self, sample_tree, engine):
        with pytest.raises(ValidationError):
            engine.copy_node(sample_tree["MATH"].id, new_parent_id=sample_tree["PHYS"].id)

    def test_copy_under_leaf_type(self, sample_tree, engine):
        with pytest.raises(ValidationError):
            engine.copy_node(sample_tree["GEO"].id, new_parent_id=sample_tree["QUAD-ROOTS"].id)

    def test_copy_depth_limit(self, sample_tree, store):
        shallow = TreeEngine(store, TreeSettings(max_depth=3, conflict_retry_delay=0))
        with pytest.raises(ValidationError):
            shallow.copy_node(sample_tree["ALG"].id, new_parent_id=sample_tree["MECH"].id)

    @pytest.mark.parametrize("suffix", ["", "   "])
    def test_blank_suffix(self, sample_tree, engine, suffix):
        with pytest.raises(ValidationError):
            engine.copy_node(sample_tree["GEO"].id, code_suffix=suffix)

    def test_missing_node(self, engine):
        with pytest.raises(NodeNotFoundError):
            engine.copy_node(999)

    def test_missing_parent(self, sample_tree, engine):
        with pytest.raises(ParentNotFoundError):
            engine.copy_node(sample_tree["GEO"].id, new_parent_id=999)

    def test_accepts_copy_spec(self, sample_tree, engine, child_codes):
        s = sample_tree
        result = engine.copy_node(CopySpec(id=s["GEO"].id, new_parent_id=s["PHYS"].id, code_suffix="-B"))

        assert result.root.code == "GEO-B"
        assert child_codes(s["PHYS"].id) == ["MECH", "GEO-B"]
        assert result.to_dict()["copied_count"] == 1


# ==================== 恢复 ====================

class TestRestoreNode:

    def test_restore_appends_to_end(self, sample_tree, engine, child_codes):
        s = sample_tree
        engine.delete_node(s["LIN"].id)

        node = engine.restore_node(s["LIN"].id)

        assert node.is_deleted is False
        assert node.order == 1
        assert child_codes(s["ALG"].id) == ["QUAD", "LIN"]

    def test_not_deleted(self, sample_tree, engine):
        with pytest.raises(ValidationError):
            engine.restore_node(sample_tree["LIN"].id)

    def test_parent_still_deleted(self, sample_tree, engine):
        s = sample_tree
        engine.delete_node(s["ALG"].id, cascade=True)
        with pytest.raises(ParentNotFoundError):
            engine.restore_node(s["LIN"].id)

    def test_restore_without_cascade(self, sample_tree, engine, queries):
        s = sample_tree
        engine.delete_node(s["ALG"].id, cascade=True)
        engine.restore_node(s["ALG"].id)

        assert queries.get_children(s["ALG"].id) == []
        assert engine.validate_integrity().is_valid

    def test_cascade_restores_same_batch(self, sample_tree, engine, raw_node, child_codes):
        s = sample_tree
        engine.delete_node(s["LIN"].id)
        engine.delete_node(s["ALG"].id, cascade=True)

        engine.restore_node(s["ALG"].id, cascade=True)

        assert child_codes(s["MATH"].id) == ["GEO", "ALG"]
        assert child_codes(s["ALG"].id) == ["QUAD"]
        assert child_codes(s["QUAD"].id) == ["QUAD-ROOTS"]
        assert raw_node(s["LIN"].id).is_deleted is True
        assert engine.validate_integrity().is_valid

    def test_hard_deleted_cannot_restore(self, sample_tree, engine):
        s = sample_tree
        engine.delete_node(s["GEO"].id, hard=True)
        with pytest.raises(NodeNotFoundError):
            engine.restore_node(s["GEO"].id)


# ==================== 批量 ====================

class TestBulkOperations:

    def test_bulk_create_partial_success(self, sample_tree, engine, child_codes):
        result = engine.bulk_create([
            {"parent_code": "MATH", "name": "统计", "code": "STAT", "node_type": "CHAPTER"},
            {"parent_code": "STAT", "name": "均值", "code": "MEAN", "node_type": "TOPIC"},
            {"parent_code": "MATH", "name": "重复", "code": "GEO", "node_type": "CHAPTER"},
            {"parent_id": 999, "name": "孤儿", "code": "ORPHAN", "node_type": "TOPIC"},
            {"parent_code": "MATH", "code": "NONAME", "node_type": "CHAPTER"},
        ])

        assert [item.success for item in result.items] == [True, True, False, False, False]
        assert result.success_count == 2
        assert result.failure_count == 3
        assert not result.all_succeeded
        assert result.items[1].node.parent_id == result.items[0].node.id
        assert result.items[2].error_code == ErrorCode.DUPLICATE_CODE.value
        assert result.items[3].error_code == ErrorCode.PARENT_NOT_FOUND.value
        assert result.items[4].error_code == ErrorCode.VALIDATION_ERROR.value
        assert child_codes(sample_tree["MATH"].id) == ["ALG", "GEO", "STAT"]

    def test_bulk_create_result_dict(self, engine):
        result = engine.bulk_create([CreateSpec(name="数学", code="MATH", node_type="SUBJECT")])
        data = result.to_dict()
        assert data["success_count"] == 1
        assert data["items"][0]["node"]["code"] == "MATH"

    def test_bulk_move(self, sample_tree, engine, child_codes):
        s = sample_tree
        result = engine.bulk_move([
            MoveSpec(id=s["GEO"].id, new_parent_id=s["PHYS"].id),
            {"id": s["MATH"].id, "new_parent_id": s["LIN"].id},
            {"id": s["MECH"].id, "new_parent_id": s["PHYS"].id},
        ])

        assert [item.success for item in result.items] == [True, False, True]
        assert [item.affected for item in result.items] == [1, 0, 0]
        assert result.items[1].error_code == ErrorCode.CYCLE_DETECTED.value
        assert child_codes(s["PHYS"].id) == ["MECH", "GEO"]

    def test_bulk_delete(self, sample_tree, engine):
        s = sample_tree
        result = engine.bulk_delete([s["LIN"].id, s["ALG"].id, 999])

        assert [item.success for item in result.items] == [True, False, False]
        assert result.items[0].affected == 1
        assert result.items[1].error_code == ErrorCode.HAS_CHILDREN.value
        assert result.items[2].error_code == ErrorCode.NODE_NOT_FOUND.value

    def test_bulk_delete_cascade(self, sample_tree, engine):
        s = sample_tree
        result = engine.bulk_delete([s["ALG"].id, s["PHYS"].id], cascade=True)
        assert [item.affected for item in result.items] == [4, 2]
        assert engine.validate_integrity().is_valid
