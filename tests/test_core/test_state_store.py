from parley.state import IS_STREAMING, NOTICE, TUTOR_SECTION, StateStore


def test_merge_message_state_accumulates_patches():
    state = StateStore()

    state.merge_message_state(TUTOR_SECTION, "m1", {"mcq": {"items": [1]}})
    merged = state.merge_message_state(TUTOR_SECTION, "m1", {"flashcards": {"items": [2]}})
    state.merge_message_state(TUTOR_SECTION, "m2", {"mcq": {"items": [3]}})

    assert merged == {"mcq": {"items": [1]}, "flashcards": {"items": [2]}}
    assert set(state.get(TUTOR_SECTION)) == {"m1", "m2"}


def test_set_state_is_top_level_merge_and_snapshots_are_copies():
    state = StateStore()
    state.set_state({NOTICE: "hello"})
    state.set_state({IS_STREAMING: True})

    snapshot = state.get_state()
    snapshot[TUTOR_SECTION]["x"] = {}

    assert state.get(NOTICE) == "hello"
    assert state.get(IS_STREAMING) is True
    assert state.get_message_state(TUTOR_SECTION, "x") == {}
    assert state.get(TUTOR_SECTION) == {}


def test_subscribers_receive_patches_until_unsubscribed():
    state = StateStore()
    patches = []
    unsubscribe = state.subscribe(patches.append)

    state.set_notice("one")
    unsubscribe()
    state.set_notice("two")

    assert patches == [{NOTICE: "one"}]


def test_failing_subscriber_does_not_block_updates():
    state = StateStore()
    seen = []

    def _boom(_patch):
        raise ValueError("listener bug")

    state.subscribe(_boom)
    state.subscribe(seen.append)
    state.set_notice("still delivered")

    assert seen == [{NOTICE: "still delivered"}]
    assert state.get(NOTICE) == "still delivered"
