"""
Tests for application adapters.

This module tests the application layer adapters including:
- ContextPathResolver
- ParameterBinder
- ExecutorTaskRunner
"""

from decimal import Decimal

import msgspec
import pytest

from stageflow.application.adapter import ContextPathResolver, ExecutorTaskRunner, ParameterBinder, set_nested
from stageflow.domain.error import BindingError, DispatchError
from stageflow.domain.port import ExecutorBase, FunctionExecutor
from stageflow.domain.value_object import RequestContext

DOCUMENT = {
    "input": {
        "client_id": "c-1",
        "amount": Decimal("19.99"),
        "items": [{"sku": "A-1", "qty": 2}, {"sku": "B-2", "qty": 1}],
        "flags": {"vip": True},
    },
    "activities": {
        "tpl:create-client": {"name": "Create client", "output": {"id": "client-77"}},
    },
}


class TestContextPathResolver:
    """Test cases for ContextPathResolver."""

    def setup_method(self):
        """Setup test fixtures."""
        self.resolver = ContextPathResolver()

    @pytest.mark.parametrize(
        "expr, expected",
        [
            ("input.client_id", "c-1"),
            ("$.input.client_id", "c-1"),
            ("$input.client_id", "c-1"),
            ("input.items[1].sku", "B-2"),
            ("input['flags'][\"vip\"]", True),
            ('activities["tpl:create-client"].output.id', "client-77"),
        ],
    )
    def test_lookup(self, expr, expected):
        """Test resolving supported path forms."""
        assert self.resolver.lookup(DOCUMENT, expr) == expected

    def test_root(self):
        """Test that $ addresses the whole document."""
        assert self.resolver.lookup(DOCUMENT, "$") is DOCUMENT

    def test_type_preserved(self):
        """Test that non-string values come back unchanged."""
        assert self.resolver.lookup(DOCUMENT, "input.amount") == Decimal("19.99")
        assert self.resolver.lookup(DOCUMENT, "input.items") == DOCUMENT["input"]["items"]

    def test_parse_segments(self):
        """Test splitting an expression into segments."""
        assert self.resolver.parse("$.input.items[0]['sku']") == ["input", "items", 0, "sku"]

    def test_escaped_quote_in_key(self):
        """Test that escaped quotes inside a quoted key are unescaped."""
        assert self.resolver.parse('["say \\"hi\\""]') == ['say "hi"']

    @pytest.mark.parametrize("expr", ["", "input..client_id", ".input", "input[x]", "input[", "$.", "input client"])
    def test_malformed_expression(self, expr):
        """Test that malformed expressions raise BindingError."""
        with pytest.raises(BindingError):
            self.resolver.parse(expr)

    def test_non_string_expression(self):
        """Test that a non-string expression raises BindingError."""
        with pytest.raises(BindingError):
            self.resolver.parse(42)

    def test_missing_key(self):
        """Test that a missing key names the expression."""
        with pytest.raises(BindingError, match="input.missing"):
            self.resolver.lookup(DOCUMENT, "input.missing")

    def test_index_out_of_range(self):
        """Test that an out-of-range index fails."""
        with pytest.raises(BindingError, match="out of range"):
            self.resolver.lookup(DOCUMENT, "input.items[5]")

    def test_key_on_scalar(self):
        """Test that descending into a scalar fails."""
        with pytest.raises(BindingError, match="not an object"):
            self.resolver.lookup(DOCUMENT, "input.client_id.value")

    def test_index_on_object(self):
        """Test that indexing an object without that key fails."""
        with pytest.raises(BindingError, match="not an array"):
            self.resolver.lookup(DOCUMENT, "input.flags[0]")


class TestParameterBinder:
    """Test cases for ParameterBinder."""

    def setup_method(self):
        """Setup test fixtures."""
        self.binder = ParameterBinder()

    def test_path_binding(self):
        """Test that plain strings are path expressions."""
        assert self.binder.bind(DOCUMENT, {"client": "input.client_id"}) == {"client": "c-1"}

    def test_exact_placeholder_preserves_type(self):
        """Test that a single placeholder keeps the value's type."""
        bound = self.binder.bind(DOCUMENT, {"amount": "${input.amount}", "items": "${input.items}"})

        assert bound["amount"] == Decimal("19.99")
        assert bound["items"] == DOCUMENT["input"]["items"]

    def test_interpolation(self):
        """Test that placeholders inside text are interpolated."""
        bound = self.binder.bind(DOCUMENT, {"subject": "Welcome ${input.client_id} (${input.items[0].sku})"})

        assert bound == {"subject": "Welcome c-1 (A-1)"}

    def test_literals(self):
        """Test that non-string values and value mappings are literals."""
        bound = self.binder.bind(DOCUMENT, {"retries": 3, "enabled": False, "label": {"value": "input.client_id"}})

        assert bound == {"retries": 3, "enabled": False, "label": "input.client_id"}

    def test_dotted_target_builds_nested_object(self):
        """Test that dotted target keys create nested objects."""
        bound = self.binder.bind(DOCUMENT, {"client.id": "input.client_id", "client.vip": "input.flags.vip"})

        assert bound == {"client": {"id": "c-1", "vip": True}}

    def test_structured_default(self):
        """Test that a structured binding falls back to its default."""
        bound = self.binder.bind(DOCUMENT, {"channel": {"source": "input.channel", "default": "email"}})

        assert bound == {"channel": "email"}

    def test_structured_optional_omitted(self):
        """Test that an optional unresolved binding is left out."""
        bound = self.binder.bind(DOCUMENT, {"note": {"source": "input.note", "required": False}})

        assert bound == {}

    def test_structured_required_missing(self):
        """Test that a required unresolved binding raises."""
        with pytest.raises(BindingError):
            self.binder.bind(DOCUMENT, {"note": {"source": "input.note"}})

    def test_structured_type_coercion(self):
        """Test that structured bindings coerce to the declared type."""
        bound = self.binder.bind(
            DOCUMENT,
            {
                "qty": {"source": "input.items[0].qty", "type": "string"},
                "whole": {"source": {"value": "7"}, "type": "integer"},
                "vip": {"source": {"value": "yes"}, "type": "boolean"},
            },
        )

        assert bound == {"qty": "2", "whole": 7, "vip": True}

    def test_coercion_failure(self):
        """Test that a failed coercion is a binding error."""
        with pytest.raises(BindingError, match="Cannot coerce"):
            self.binder.bind(DOCUMENT, {"n": {"source": "input.amount", "type": "integer"}})

    def test_missing_placeholder(self):
        """Test that an unresolved placeholder raises."""
        with pytest.raises(BindingError):
            self.binder.bind(DOCUMENT, {"x": "id-${input.nope}"})

    def test_bound_values_are_copies(self):
        """Test that mutating the request does not change the context."""
        bound = self.binder.bind(DOCUMENT, {"items": "input.items"})
        bound["items"].append({"sku": "C-3"})

        assert len(DOCUMENT["input"]["items"]) == 2

    def test_no_bindings(self):
        """Test that no bindings give an empty request."""
        assert self.binder.bind(DOCUMENT, None) == {}


class TestSetNested:
    """Test cases for set_nested."""

    def test_overwrites_scalar_parent(self):
        """Test that a scalar in the way is replaced by an object."""
        target = {"user": "x"}

        set_nested(target, "user.name", "Ana")

        assert target == {"user": {"name": "Ana"}}


class CreateClientRequest(msgspec.Struct):
    name: str
    vip: bool = False


class CreateClient(ExecutorBase, register=False):
    use_case_code = "create_client"
    request_type = CreateClientRequest

    def execute(self, ctx, request):
        return {"id": f"client-{request.name.lower()}", "vip": request.vip}


class ClientCreated(msgspec.Struct):
    id: str
    balance: Decimal


class TestExecutorTaskRunner:
    """Test cases for ExecutorTaskRunner."""

    def setup_method(self):
        """Setup test fixtures."""
        self.runner = ExecutorTaskRunner()
        self.ctx = RequestContext()

    def test_request_converted_to_request_type(self):
        """Test that the request dictionary is converted to the declared type."""
        assert self.runner.run(CreateClient(), self.ctx, {"name": "Ana"}) == {"id": "client-ana", "vip": False}

    def test_conversion_failure_is_binding_error(self):
        """Test that a request that does not fit the type is a binding error."""
        with pytest.raises(BindingError, match="CreateClientRequest"):
            self.runner.run(CreateClient(), self.ctx, {"vip": True})

    def test_plain_request_without_type(self):
        """Test that executors without a request type receive the dictionary."""
        executor = FunctionExecutor(lambda ctx, request: {"echo": request})

        assert self.runner.run(executor, self.ctx, {"a": 1}) == {"echo": {"a": 1}}

    def test_none_response_is_empty(self):
        """Test that a None response is treated as an empty mapping."""
        assert self.runner.run(FunctionExecutor(lambda ctx, request: None), self.ctx, {}) == {}

    def test_struct_response_converted(self):
        """Test that struct responses become dictionaries with Decimals kept."""
        executor = FunctionExecutor(lambda ctx, request: ClientCreated(id="c-1", balance=Decimal("10.50")))

        assert self.runner.run(executor, self.ctx, {}) == {"id": "c-1", "balance": Decimal("10.50")}

    def test_non_mapping_response(self):
        """Test that a non-mapping response is a dispatch error."""
        with pytest.raises(DispatchError, match="expected a mapping"):
            self.runner.run(FunctionExecutor(lambda ctx, request: [1, 2]), self.ctx, {})

    def test_ctx_passed_through(self):
        """Test that the caller's context reaches the executor unchanged."""
        seen = []
        executor = FunctionExecutor(lambda ctx, request: seen.append(ctx) or {})

        self.runner.run(executor, self.ctx, {})

        assert seen == [self.ctx]
