"""Tests for effect invocation — macro lookup, emitted lines, failure reporting."""

from unittest.mock import patch

from trapsys.config import TrapConfig
from trapsys.effects import EffectInvoker, MacroInvoker
from trapsys.presentation import Outbox
from trapsys.session import TrapSession
from trapsys.world import Macro, World


def _make_invoker(history=100):
    world = World()
    world.add(Macro(name="Darts", action="/em Darts fly!\n\n  /roll 2d6  "))
    world.add(Macro(name="Blank", action="   \n"))
    outbox = Outbox()
    return MacroInvoker(world, outbox, history=history), outbox


class TestMacroInvoker:
    def test_protocol(self):
        invoker, _ = _make_invoker()
        assert isinstance(invoker, EffectInvoker)

    def test_exists_strips_hash(self):
        invoker, _ = _make_invoker()
        assert invoker.exists("#Darts")
        assert not invoker.exists("Nope")

    def test_invoke_emits_each_line(self):
        invoker, outbox = _make_invoker()
        assert invoker.invoke("#Darts")
        assert [m.field_value("") for m in outbox.messages] == ["/em Darts fly!", "/roll 2d6"]
        assert all(m.kind == "effect" and m.audience.value == "all" for m in outbox.messages)
        assert list(invoker.invoked) == ["Darts"]

    def test_missing_or_empty_macro(self):
        invoker, outbox = _make_invoker()
        assert not invoker.invoke("Nope")
        assert not invoker.invoke("Blank")
        assert len(outbox.messages) == 0
        assert list(invoker.invoked) == []

    def test_history_is_bounded(self):
        invoker, _ = _make_invoker(history=3)
        for _ in range(5):
            invoker.invoke("Darts")
        assert len(invoker.invoked) == 3


class TestRunEffect:
    def _make_session(self):
        world = World()
        world.add(Macro(name="Darts", action="/em Darts fly!"))
        return TrapSession(world, TrapConfig())

    def test_success(self):
        session = self._make_session()
        assert session.run_effect("Darts")
        assert session.outbox.last("Error") is None

    def test_missing_effect_reported(self):
        session = self._make_session()
        assert not session.run_effect("Gone", "Failure effect")
        assert session.outbox.last("Error").field_value("") == 'Failure effect "Gone" could not be run'

    def test_exception_reported_not_raised(self, caplog):
        session = self._make_session()
        with patch.object(session.invoker, "invoke", side_effect=ValueError("bad macro")):
            assert not session.run_effect("Darts")
        assert session.outbox.last("Error") is not None
        assert "bad macro" in caplog.text
