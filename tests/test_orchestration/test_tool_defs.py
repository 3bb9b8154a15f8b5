"""Tests for tool definition selection and payload building."""

import pytest

from toolloop.models.messages import ToolKind, ToolSpec
from toolloop.orchestration.tool_defs import build_tool_definitions, select_tool_specs
from toolloop.tools.remote import RemoteToolDef


@pytest.fixture
def mixed_registry(registry):
    registry.register(ToolSpec(name="delete_all", description="Delete things."), kind=ToolKind.MUTATE)
    registry.set_remote_tools([RemoteToolDef(server_id="docs", name="search", read_only=True)])
    return registry


class TestSelectToolSpecs:
    """Tests for select_tool_specs."""

    def test_all_tools(self, mixed_registry):
        """Test every tool is offered by default, remote last."""
        names = [spec.name for spec in select_tool_specs(mixed_registry)]
        assert names == ["echo", "add", "delete_all", "docs/search"]

    def test_named_subset_keeps_order(self, mixed_registry):
        """Test named selection follows the given order."""
        names = [spec.name for spec in select_tool_specs(mixed_registry, names=["docs/search", "echo"])]
        assert names == ["docs/search", "echo"]

    def test_unknown_name(self, mixed_registry):
        """Test naming an unregistered tool raises KeyError."""
        with pytest.raises(KeyError):
            select_tool_specs(mixed_registry, names=["missing"])

    def test_read_only_filter(self, mixed_registry):
        """Test filtering by kind drops mutating tools."""
        names = [spec.name for spec in select_tool_specs(mixed_registry, kinds={ToolKind.READ})]
        assert names == ["echo", "add", "docs/search"]

    def test_exclude(self, mixed_registry):
        """Test excluded tools are left out."""
        names = [spec.name for spec in select_tool_specs(mixed_registry, exclude_tools={"add"})]
        assert "add" not in names

    def test_without_remote(self, mixed_registry):
        """Test include_remote=False offers built-ins only."""
        names = [spec.name for spec in select_tool_specs(mixed_registry, include_remote=False)]
        assert names == ["echo", "add", "delete_all"]


class TestBuildToolDefinitions:
    """Tests for build_tool_definitions."""

    def test_definition_format(self, registry):
        """Test each definition uses the function-calling shape."""
        definitions = build_tool_definitions(registry)

        assert len(definitions) == 2
        echo = definitions[0]
        assert echo["type"] == "function"
        assert echo["function"]["name"] == "echo"
        assert echo["function"]["description"] == "Echo the given text back."
        assert echo["function"]["parameters"]["required"] == ["text"]
        assert echo["function"]["parameters"]["additionalProperties"] is False

    def test_filters_forwarded(self, mixed_registry):
        """Test selection filters apply to the definitions."""
        definitions = build_tool_definitions(mixed_registry, kinds=[ToolKind.MUTATE])
        assert [d["function"]["name"] for d in definitions] == ["delete_all"]
