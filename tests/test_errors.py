from termloop.errors import ModelInvocationError, ToolArgumentsError, extract_error_details


class ProviderError(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.status_code = 429
        self.body = '{"error": "rate limited"}'


def test_details_include_provider_fields_and_cause() -> None:
    cause = ProviderError("too many requests")
    try:
        raise ModelInvocationError("model failed after 4 attempts", attempts=4, cause=cause) from cause
    except ModelInvocationError as exc:
        details = extract_error_details(exc)

    assert "cause: ProviderError: too many requests" in details
    assert "ModelInvocationError: model failed after 4 attempts" in details


def test_provider_status_and_body_are_rendered() -> None:
    details = extract_error_details(ProviderError("slow down"))

    assert details.startswith("status: 429\nbody: {\"error\": \"rate limited\"}")


def test_tool_arguments_error_message() -> None:
    error = ToolArgumentsError("wait", "seconds: too large")

    assert str(error) == "Parameter validation error for wait: seconds: too large"
