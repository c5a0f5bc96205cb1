"""测试公共配置

提供内存数据库、存储、引擎、查询服务以及示例树等 fixtures。
"""

import itertools

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from qbtree.config import TreeSettings
from qbtree.orm import Base
from qbtree.tree import QueryService, SqlAlchemyNodeStore, TreeEngine, TreeNode


@pytest.fixture(scope="function")
def memory_engine():
    """创建内存数据库引擎

    使用 StaticPool 确保所有操作使用同一个连接，
    避免 SQLite 内存数据库不同连接看不到数据的问题。
    """
    engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(memory_engine):
    return sessionmaker(autocommit=False, autoflush=True, bind=memory_engine)


@pytest.fixture
def tree_settings():
    """测试用引擎配置（重试不等待）"""
    return TreeSettings(
        max_depth=10,
        soft_delete=True,
        conflict_max_retries=3,
        conflict_retry_delay=0,
        default_timeout=None,
    )


@pytest.fixture
def store(session_factory):
    return SqlAlchemyNodeStore(session_factory)


@pytest.fixture
def engine(store, tree_settings):
    return TreeEngine(store, tree_settings)


@pytest.fixture
def queries(store, tree_settings):
    return QueryService(store, tree_settings)


@pytest.fixture
def make_node(engine):
    """节点构建器

    根节点默认为 SUBJECT，其他节点默认为 TOPIC，编码自动生成。

    使用示例:
        root = make_node(name="数学")
        child = make_node(root, name="代数", node_type="CHAPTER")
    """
    counter = itertools.count(1)

    def _make(parent=None, name=None, code=None, node_type=None, order=None, description=None):
        seq = next(counter)
        parent_id = parent.id if parent is not None and hasattr(parent, "id") else parent
        if node_type is None:
            node_type = "SUBJECT" if parent_id is None else "TOPIC"
        return engine.create_node(
            parent_id,
            name or f"节点{seq}",
            code or f"N{seq:04d}",
            node_type,
            order,
            description,
        )

    return _make


@pytest.fixture
def raw_node(store):
    """读取节点（包括软删除的节点），不存在返回 None"""

    def _get(node_id):
        with store.transaction(read_only=True) as tx:
            record = tx.get(node_id, include_deleted=True)
            return TreeNode.from_record(record) if record is not None else None

    return _get


@pytest.fixture
def child_codes(queries):
    """子节点编码列表（按 order），同时断言 order 连续"""

    def _codes(parent_id=None):
        children = queries.get_children(parent_id)
        assert [c.order for c in children] == list(range(len(children)))
        return [c.code for c in children]

    return _codes


@pytest.fixture
def sample_tree(make_node):
    """示例题库分类树

        MATH (SUBJECT)
        ├── ALG (CHAPTER)
        │   ├── LIN (TOPIC)
        │   └── QUAD (TOPIC)
        │       └── QUAD-ROOTS (OBJECTIVE)
        └── GEO (CHAPTER)
        PHYS (SUBJECT)
        └── MECH (CHAPTER)
    """
    nodes = {}
    nodes["MATH"] = make_node(name="数学", code="MATH", node_type="SUBJECT")
    nodes["ALG"] = make_node(nodes["MATH"], name="代数", code="ALG", node_type="CHAPTER")
    nodes["LIN"] = make_node(nodes["ALG"], name="一次方程", code="LIN", node_type="TOPIC")
    nodes["QUAD"] = make_node(nodes["ALG"], name="二次方程", code="QUAD", node_type="TOPIC")
    nodes["QUAD-ROOTS"] = make_node(nodes["QUAD"], name="求根公式", code="QUAD-ROOTS", node_type="OBJECTIVE")
    nodes["GEO"] = make_node(nodes["MATH"], name="几何", code="GEO", node_type="CHAPTER")
    nodes["PHYS"] = make_node(name="物理", code="PHYS", node_type="SUBJECT")
    nodes["MECH"] = make_node(nodes["PHYS"], name="力学", code="MECH", node_type="CHAPTER")
    return nodes
