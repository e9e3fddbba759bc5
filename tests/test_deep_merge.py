"""Tests for deep merge semantics used by partial updates."""

from knowledge_store.core.deep_merge import deep_merge


class TestDeepMerge:
    def test_sequential_merges_accumulate_keys(self):
        """{a:0,c:3} + {a:1} + {b:2} -> {a:1,b:2,c:3}."""
        state = {"a": 0, "c": 3}
        state = deep_merge(state, {"a": 1})
        state = deep_merge(state, {"b": 2})
        assert state == {"a": 1, "b": 2, "c": 3}

    def test_nested_dicts_merge_recursively(self):
        """Nested dicts merge key by key."""
        base = {"meta": {"owner": "ana", "tags": ["x"]}, "count": 1}
        merged = deep_merge(base, {"meta": {"reviewed": True}})
        assert merged == {"meta": {"owner": "ana", "tags": ["x"], "reviewed": True}, "count": 1}

    def test_lists_are_replaced_not_concatenated(self):
        """Lists in the patch replace the existing list."""
        merged = deep_merge({"items": [1, 2, 3]}, {"items": [4]})
        assert merged == {"items": [4]}

    def test_scalar_replaces_dict(self):
        """A non-dict patch value replaces a dict wholesale."""
        merged = deep_merge({"config": {"a": 1}}, {"config": None})
        assert merged == {"config": None}

    def test_non_dict_base_is_replaced(self):
        """Merging into a non-dict returns the patch."""
        assert deep_merge([1, 2], {"a": 1}) == {"a": 1}
        assert deep_merge({"a": 1}, "text") == "text"

    def test_inputs_are_not_mutated(self):
        """Neither argument is modified and the result shares no structure."""
        base = {"nested": {"a": 1}}
        patch_value = {"nested": {"b": [1]}}
        merged = deep_merge(base, patch_value)

        merged["nested"]["b"].append(2)
        merged["nested"]["c"] = 3

        assert base == {"nested": {"a": 1}}
        assert patch_value == {"nested": {"b": [1]}}
