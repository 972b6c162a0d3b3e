from dataclasses import replace

from usagewatch.models import AuthStatus, ErrorState, UsageState
from usagewatch.publisher import StatePublisher


class TestStatePublisher:
    def test_initial_state(self) -> "None":
        assert StatePublisher().state == UsageState()

    def test_publish_replaces_state(self) -> "None":
        publisher = StatePublisher()
        state = UsageState(account_id="a", auth_status=AuthStatus.CONNECTED)

        publisher.publish(state)

        assert publisher.state is state

    def test_update_applies_function(self) -> "None":
        publisher = StatePublisher(UsageState(account_id="a"))

        result = publisher.update(lambda s: replace(s, error=ErrorState.NETWORK_ERROR))

        assert result.account_id == "a"
        assert publisher.state.error is ErrorState.NETWORK_ERROR

    def test_listeners(self) -> "None":
        publisher = StatePublisher()
        seen: "list[UsageState]" = []
        unsubscribe = publisher.subscribe(seen.append)

        publisher.publish(UsageState(account_id="a"))
        unsubscribe()
        publisher.publish(UsageState(account_id="b"))

        assert [s.account_id for s in seen] == ["a"]
