"""In-memory provider for executor and CLI tests.

Key Features:
- In-memory resource state keyed by external ID
- Computed outputs per type (e.g. a generated host name)
- Error injection (transient or permanent, for N calls or forever)
- Call log and in-flight tracking for ordering and concurrency assertions

Usage:
    from provider_mock import MockProvider

    provider = MockProvider(computed={"web-app": lambda a: {"host": f"{a['name']}.example.net"}})
    provider.inject_error("web-app", TransientProviderError("throttled"), times=2)

    report = await Executor(store).execute(plan, provider)
    assert provider.calls_for("web-app") == 3
"""

from .provider import MockCall, MockProvider, MockResource

__all__ = [
    "MockCall",
    "MockProvider",
    "MockResource",
]
