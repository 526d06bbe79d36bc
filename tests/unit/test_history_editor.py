import pytest

from session_orchestrator.domain.chat.chat_projector import ChatProjector
from session_orchestrator.domain.chat.history_editor import HistoryEditor, canonical_index
from session_orchestrator.domain.models.chat_state import (
    ModelHistoryItem, SystemHistoryItem, UserHistoryItem
)
from session_orchestrator.infrastructure.engine.mock_engine import (
    MockChatSession, MockInferenceBackend, MockSequenceHandle
)

HISTORY = [
    SystemHistoryItem(text="sys"),
    UserHistoryItem(text="a"),
    ModelHistoryItem(response=["b"]),
    UserHistoryItem(text="c"),
    ModelHistoryItem(response=["d"]),
]


@pytest.fixture
def session():
    backend = MockInferenceBackend()
    session = MockChatSession(backend, MockSequenceHandle(backend))
    session.set_history(HISTORY)
    return session


@pytest.fixture
def editor():
    return HistoryEditor(ChatProjector())


class TestCanonicalIndex:
    def test_skips_system_items(self):
        assert canonical_index(HISTORY, 0) == 1
        assert canonical_index(HISTORY, 3) == 4

    def test_system_item_in_the_middle(self):
        history = [UserHistoryItem(text="a"), SystemHistoryItem(text="s"), ModelHistoryItem(response=["b"])]

        assert canonical_index(history, 1) == 2

    def test_out_of_range(self):
        assert canonical_index(HISTORY, 4) is None


class TestHistoryEditor:
    def test_delete_user_turn(self, session, editor):
        projection = editor.projector.project(session.get_history())
        target = projection[2]

        cut = editor.plan_delete(session.get_history(), projection, target.id)
        editor.apply(session, cut, "delete", target.id)

        assert cut == 3
        assert session.get_history() == HISTORY[:3]

    def test_delete_ignores_model_targets(self, session, editor):
        projection = editor.projector.project(session.get_history())

        assert editor.plan_delete(session.get_history(), projection, projection[3].id) is None

    def test_regenerate_keeps_preceding_user_turn(self, session, editor):
        projection = editor.projector.project(session.get_history())
        target = projection[3]

        cut = editor.plan_regenerate(session.get_history(), projection, target.id)
        editor.apply(session, cut, "regenerate", target.id)

        assert cut == 4
        assert session.get_history() == HISTORY[:4]

    def test_regenerate_ignores_user_targets(self, session, editor):
        projection = editor.projector.project(session.get_history())

        assert editor.plan_regenerate(session.get_history(), projection, projection[2].id) is None

    def test_unknown_id_is_a_no_op(self, session, editor):
        projection = editor.projector.project(session.get_history())

        assert editor.plan_delete(session.get_history(), projection, "missing") is None
        assert editor.plan_regenerate(session.get_history(), projection, "missing") is None

    def test_apply_prunes_ids_past_the_cut(self, session, editor):
        projection = editor.projector.project(session.get_history())

        editor.apply(session, 3, "delete", projection[2].id)

        assert projection[2].id not in editor.projector.arena.ids()
        assert projection[0].id in editor.projector.arena.ids()
