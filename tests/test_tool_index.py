from mcp_execution_engine.models import ToolDescriptor, ToolParameter
from mcp_execution_engine.schema import parse_tool_descriptor
from mcp_execution_engine.tool_index import ToolIndex


def fs_tools():
    return [
        parse_tool_descriptor(
            "fs",
            {
                "name": "read",
                "description": "Read a file and return its contents",
                "inputSchema": {"properties": {"path": {"type": "string"}}, "required": ["path"]},
            },
        ),
        parse_tool_descriptor(
            "fs",
            {
                "name": "list_directory",
                "description": "List the entries of a directory",
                "inputSchema": {"properties": {"dir": {"type": "string"}}, "required": ["dir"]},
            },
        ),
    ]


def git_tools():
    return [
        parse_tool_descriptor(
            "git",
            {
                "name": "commit",
                "description": "Record staged changes in the git repository",
                "inputSchema": {"properties": {"message": {"type": "string"}}, "required": ["message"]},
            },
        )
    ]


def test_search_ranks_most_relevant_first():
    index = ToolIndex.from_descriptors(fs_tools() + git_tools())
    results = index.search("read the README.md file")
    assert results[0].qualified_name == "fs.read"
    assert "git.commit" not in [tool.qualified_name for tool in results]


def test_unrelated_intent_returns_nothing():
    index = ToolIndex.from_descriptors(fs_tools() + git_tools())
    assert index.search("please refactor my kitchen") == []
    assert index.search("the and of") == []


def test_search_respects_k():
    index = ToolIndex.from_descriptors(fs_tools())
    assert len(index.search("file directory read list", k=1)) == 1
    assert index.search("read file", k=0) == []


def test_ties_break_on_priority_then_name():
    twin = dict(name="ping", description="Ping the host")
    alpha = ToolDescriptor(server="alpha", **twin)
    beta = ToolDescriptor(server="beta", **twin)
    index = ToolIndex.from_descriptors([beta, alpha])
    assert [tool.server for tool in index.search("ping host")] == ["alpha", "beta"]

    index.set_priority("beta", 10)
    index.rebuild({"alpha": [alpha], "beta": [beta]})
    assert [tool.server for tool in index.search("ping host")] == ["beta", "alpha"]


def test_search_is_deterministic():
    index = ToolIndex.from_descriptors(fs_tools() + git_tools())
    first = [tool.qualified_name for tool in index.search("read directory file")]
    for _ in range(5):
        assert [tool.qualified_name for tool in index.search("read directory file")] == first


def test_replace_and_remove_server():
    index = ToolIndex.from_descriptors(fs_tools())
    index.replace_server("git", git_tools())
    assert index.servers() == ["fs", "git"]
    assert index.search("git commit")[0].qualified_name == "git.commit"

    index.remove_server("git")
    assert index.servers() == ["fs"]
    assert index.search("git commit") == []
    stats = index.stats()
    assert stats["tools"] == 2
    assert stats["perServer"] == {"fs": 2}
    assert stats["rebuilds"] == 3


def test_score_is_zero_for_unknown_descriptor():
    index = ToolIndex.from_descriptors(fs_tools())
    stranger = ToolDescriptor(server="x", name="read", parameters=[ToolParameter(name="path")])
    assert index.score("read file", stranger) == 0.0
    assert index.score("read file", index.descriptors()[0]) > 0
