"""Tests for the skill-check pipeline — menus, roll matching, mismatch, resolution."""

from unittest.mock import patch

import pytest

from trapsys.checks import AdvantageMode, CheckStage
from trapsys.config import TrapConfig
from trapsys.descriptor import parse_descriptor
from trapsys.errors import CommandError
from trapsys.resolution import SkillCheckPipeline, normalize_skill, safe_skill, skill_mismatch
from trapsys.rolls import RollEvent
from trapsys.session import TrapSession
from trapsys.traps import TrapStateMachine
from trapsys.world import Character, Macro, Page, Player, Token, World

INTERACTION = ('{!traptrigger uses: 2/2 armed: on type: interaction success: Disarmed '
               'failure: Darts checks: "Stealth:15,Perception:12"}')


def _make_pipeline(notes=INTERACTION):
    world = World()
    world.add(Page(id="p1", snapping_increment=70))
    world.add(Player(id="gm", name="GM", is_gm=True))
    world.add(Player(id="alice", name="Alice"))
    world.add(Player(id="bob", name="Bob"))
    world.add(Character(id="c1", name="Aria", controlled_by=["alice"]))
    world.add(Character(id="c2", name="Borin", controlled_by=["bob"]))
    world.add(Character(id="c3", name="Cade", controlled_by=["bob"]))
    world.add(Macro(name="Darts", action="/em Darts fly!"))
    world.add(Macro(name="Disarmed", action="/em Click."))
    world.add(Token(id="trap1", page_id="p1", left=175, top=175, name="Chest", notes=notes))
    session = TrapSession(world, TrapConfig())
    traps = TrapStateMachine(session)
    return SkillCheckPipeline(session, traps), session


def _open_check(pipeline, session, character_id="c1", index=0, mode="normal", requester="gm"):
    trap = session.world.get_token("trap1")
    pipeline.select_character(trap, character_id, requester)
    pipeline.request_check(trap, index, requester)
    return pipeline.roll_check(trap, index, mode, requester)


def _uses(session):
    d = parse_descriptor(session.world.get_token("trap1").notes)
    return d.current_uses, d.max_uses, d.is_armed


class TestSkillLabels:
    def test_normalize(self):
        assert normalize_skill("Stealth Check") == "stealth"
        assert normalize_skill("Dexterity Save") == "dexterity"
        assert normalize_skill("Sleight_of_Hand") == "sleight of hand"

    def test_safe_skill(self):
        assert safe_skill("Sleight of Hand") == "Sleight_of_Hand"

    def test_mismatch_rules(self):
        assert skill_mismatch("Stealth", None) is None
        assert skill_mismatch("Stealth", "Stealth Check") is None
        assert "Expected 'Stealth'" in skill_mismatch("Stealth", "Perception")
        assert "flat d20" in skill_mismatch("Stealth", "Flat Roll")
        assert "flat d20" in skill_mismatch("Flat Roll", "Stealth")
        assert skill_mismatch("Flat Roll", "Flat Roll") is None


class TestMenus:
    def test_explain_offers_player_characters(self):
        pipeline, session = _make_pipeline()
        pipeline.interact(session.world.get_token("trap1"), "explain", "gm")
        msg = session.outbox.last("Select Character")
        assert msg.has_action("selectcharacter trap1 c1 gm")
        assert msg.has_action("selectcharacter trap1 c2 gm")

    def test_gm_response_menu(self):
        pipeline, session = _make_pipeline()
        pipeline.select_character(session.world.get_token("trap1"), "c1", "gm")
        msg = session.outbox.last("GM Response")
        assert msg.has_action("allow trap1 gm")
        assert msg.has_action("check trap1 0 gm")
        assert msg.has_action("check trap1 1 gm")
        assert msg.has_action("customcheck trap1 gm")

    def test_unknown_character(self):
        pipeline, session = _make_pipeline()
        with pytest.raises(CommandError):
            pipeline.select_character(session.world.get_token("trap1"), "nobody", "gm")

    def test_not_an_interaction_trap(self):
        pipeline, session = _make_pipeline("{!traptrigger uses: 1/1 armed: on}")
        with pytest.raises(CommandError, match="interaction"):
            pipeline.interact(session.world.get_token("trap1"), "explain", "gm")

    def test_check_menu_carries_character(self):
        pipeline, session = _make_pipeline()
        trap = session.world.get_token("trap1")
        pipeline.select_character(trap, "c1", "gm")
        pending = pipeline.request_check(trap, 0, "gm")
        assert pending.character_id == "c1"
        msg = session.outbox.last("Stealth Check")
        assert msg.field_value("Character") == "Aria"
        assert msg.has_action("rollcheck trap1 0 advantage gm")
        assert msg.has_action("displaydc trap1 0 gm")

    def test_bad_check_index(self):
        pipeline, session = _make_pipeline()
        with pytest.raises(CommandError):
            pipeline.request_check(session.world.get_token("trap1"), 5, "gm")

    def test_roll_prompt_hides_dc(self):
        pipeline, session = _make_pipeline()
        _open_check(pipeline, session)
        prompt = session.outbox.last("Skill Check Required")
        assert prompt.field_value("Skill") == "Stealth"
        assert prompt.field_value("DC") is None
        assert prompt.audience.value == "all"

    def test_display_dc_reveals(self):
        pipeline, session = _make_pipeline()
        trap = session.world.get_token("trap1")
        pipeline.select_character(trap, "c1", "gm")
        pipeline.display_dc(trap, 0, "gm")
        assert not session.outbox.last("Stealth Check").has_action("displaydc")
        pipeline.roll_check(trap, 0, "normal", "gm")
        assert session.outbox.last("Skill Check Required").field_value("DC") == "15"

    def test_unknown_roll_type(self):
        pipeline, session = _make_pipeline()
        with pytest.raises(CommandError, match="roll type"):
            pipeline.roll_check(session.world.get_token("trap1"), 0, "sideways", "gm")


class TestDirectOutcomes:
    def test_fail_action(self):
        pipeline, session = _make_pipeline()
        pipeline.interact(session.world.get_token("trap1"), "trigger", "gm")
        assert list(session.invoker.invoked) == ["Darts"]
        assert _uses(session) == (1, 2, True)
        assert session.outbox.last("Action Failed") is not None

    def test_fail_action_on_disarmed_trap(self):
        pipeline, session = _make_pipeline(INTERACTION.replace("armed: on", "armed: off"))
        with pytest.raises(CommandError):
            pipeline.fail_action(session.world.get_token("trap1"), "gm")

    def test_allow_action(self):
        pipeline, session = _make_pipeline()
        pipeline.allow_action(session.world.get_token("trap1"), "gm")
        assert list(session.invoker.invoked) == ["Disarmed"]
        assert _uses(session) == (1, 2, True)


class TestRollResolution:
    def test_bare_roll_auto_associated_failure(self):
        pipeline, session = _make_pipeline()
        _open_check(pipeline, session)
        assert pipeline.handle_roll(RollEvent(player_id="alice", total=12))
        result = session.outbox.last("Result")
        assert result.field_value("Final Roll") == "12"
        assert result.field_value("Result") == "❌ Failure!"
        assert list(session.invoker.invoked) == ["Darts"]
        assert _uses(session) == (1, 2, True)
        assert len(session.checks) == 0

    def test_success_runs_success_effect(self):
        pipeline, session = _make_pipeline()
        _open_check(pipeline, session)
        pipeline.handle_roll(RollEvent(player_id="alice", total=15, character_id="c1"))
        assert session.outbox.last("Result").field_value("Result") == "✅ Success!"
        assert list(session.invoker.invoked) == ["Disarmed"]

    def test_duplicate_roll_finds_nothing(self):
        pipeline, session = _make_pipeline()
        _open_check(pipeline, session)
        assert pipeline.handle_roll(RollEvent(player_id="alice", total=12))
        assert not pipeline.handle_roll(RollEvent(player_id="alice", total=12))
        assert _uses(session) == (1, 2, True)

    def test_unrelated_roll_dropped(self):
        pipeline, session = _make_pipeline()
        _open_check(pipeline, session)
        assert not pipeline.handle_roll(RollEvent(player_id="bob", total=20))
        assert len(session.checks) == 1

    def test_ambiguous_bare_roll_dropped(self):
        pipeline, session = _make_pipeline()
        _open_check(pipeline, session, "c2", requester="gm")
        _open_check(pipeline, session, "c3", requester="gm")
        assert not pipeline.handle_roll(RollEvent(player_id="bob", total=20))

    def test_unauthorized_character_roll_falls_back_to_player(self):
        pipeline, session = _make_pipeline()
        _open_check(pipeline, session, "c1", requester="gm")
        # bob does not control c1 and has no check of his own
        assert not pipeline.handle_roll(RollEvent(player_id="bob", total=20, character_id="c1"))
        assert len(session.checks) == 1

    def test_gm_may_roll_for_any_character(self):
        pipeline, session = _make_pipeline()
        _open_check(pipeline, session, "c1", requester="alice")
        assert pipeline.handle_roll(RollEvent(player_id="gm", total=20, character_id="c1"))

    def test_character_mismatch_warns(self):
        pipeline, session = _make_pipeline()
        _open_check(pipeline, session, "c1")
        assert not pipeline.handle_roll(RollEvent(player_id="gm", total=20, character_id="c2"))
        assert "Ignoring" in session.outbox.last("Warning").field_value("")

    def test_roll_before_check_chosen(self):
        pipeline, session = _make_pipeline()
        pipeline.select_character(session.world.get_token("trap1"), "c1", "gm")
        assert not pipeline.handle_roll(RollEvent(player_id="alice", total=12))
        assert session.outbox.last("Warning") is not None

    def test_depletion_during_resolution_disarms(self):
        pipeline, session = _make_pipeline(INTERACTION.replace("2/2", "1/2"))
        _open_check(pipeline, session)
        pipeline.handle_roll(RollEvent(player_id="alice", total=3))
        assert _uses(session) == (0, 2, False)

    def test_gm_checks_for_two_characters_both_resolve(self):
        pipeline, session = _make_pipeline()
        _open_check(pipeline, session, "c1")
        _open_check(pipeline, session, "c2")
        assert len(session.checks) == 2
        assert pipeline.handle_roll(RollEvent(player_id="alice", total=12))
        assert session.outbox.last("Result").title.endswith("Aria - Stealth Result")
        assert pipeline.handle_roll(RollEvent(player_id="bob", total=20))
        assert session.outbox.last("Result").title.endswith("Borin - Stealth Result")
        assert list(session.invoker.invoked) == ["Darts", "Disarmed"]
        assert _uses(session) == (0, 2, False)
        assert len(session.checks) == 0


class TestEffectFailures:
    def _open_revealed_check(self, pipeline, session):
        trap = session.world.get_token("trap1")
        pipeline.select_character(trap, "c1", "gm")
        pipeline.display_dc(trap, 0, "gm")
        pipeline.roll_check(trap, 0, "normal", "gm")
        assert "gm" in session.reveal_dc

    def test_missing_failure_macro_still_spends_use(self):
        pipeline, session = _make_pipeline(INTERACTION.replace("failure: Darts", "failure: Gone"))
        _open_check(pipeline, session)
        assert pipeline.handle_roll(RollEvent(player_id="alice", total=12))
        assert session.outbox.last("Error").field_value("") == 'Effect "Gone" could not be run'
        assert _uses(session) == (1, 2, True)
        assert len(session.checks) == 0

    def test_effect_exception_reported(self, caplog):
        pipeline, session = _make_pipeline()
        self._open_revealed_check(pipeline, session)
        with patch.object(session.invoker, "invoke", side_effect=RuntimeError("macro exploded")):
            assert pipeline.handle_roll(RollEvent(player_id="alice", total=20))
        assert session.outbox.last("Error").field_value("") == 'Effect "Disarmed" could not be run'
        assert "macro exploded" in caplog.text
        assert _uses(session) == (1, 2, True)
        assert len(session.checks) == 0
        assert session.reveal_dc == set()

    def test_cleanup_when_resolution_raises(self):
        pipeline, session = _make_pipeline()
        self._open_revealed_check(pipeline, session)
        with patch.object(pipeline.traps, "consume", side_effect=RuntimeError("notes locked")):
            with pytest.raises(RuntimeError):
                pipeline.handle_roll(RollEvent(player_id="alice", total=20))
        assert len(session.checks) == 0
        assert session.checks.by_player == {}
        assert session.checks.by_character == {}
        assert session.reveal_dc == set()


class TestAdvantage:
    def test_two_manual_rolls_take_higher(self):
        pipeline, session = _make_pipeline()
        pending = _open_check(pipeline, session, mode="advantage")
        assert pipeline.handle_roll(RollEvent(player_id="alice", total=8))
        assert pending.stage is CheckStage.AWAITING_SECOND_ROLL
        assert pending.first_roll == 8
        assert session.outbox.last("Waiting For Second Roll") is not None
        pipeline.handle_roll(RollEvent(player_id="alice", total=14))
        result = session.outbox.last("Result")
        assert result.field_value("First Roll") == "8"
        assert result.field_value("Second Roll") == "14"
        assert result.field_value("Final Roll") == "14"

    def test_two_manual_rolls_take_lower(self):
        pipeline, session = _make_pipeline()
        _open_check(pipeline, session, mode="disadvantage")
        pipeline.handle_roll(RollEvent(player_id="alice", total=18))
        pipeline.handle_roll(RollEvent(player_id="alice", total=9))
        assert session.outbox.last("Result").field_value("Final Roll") == "9"

    def test_dual_dice_event_resolves_at_once(self):
        pipeline, session = _make_pipeline()
        _open_check(pipeline, session, mode="advantage")
        pipeline.handle_roll(RollEvent(player_id="alice", total=17, dice=[6, 17],
                                       roll_type=AdvantageMode.ADVANTAGE))
        result = session.outbox.last("Result")
        assert result.field_value("Final Roll") == "17"
        assert result.field_value("Result") == "✅ Success!"

    def test_dual_dice_disadvantage(self):
        pipeline, session = _make_pipeline()
        _open_check(pipeline, session, mode="disadvantage")
        pipeline.handle_roll(RollEvent(player_id="alice", total=6, dice=[6, 17]))
        assert session.outbox.last("Result").field_value("Final Roll") == "6"


class TestMismatch:
    def _escalate(self):
        pipeline, session = _make_pipeline()
        pending = _open_check(pipeline, session)
        handled = pipeline.handle_roll(RollEvent(player_id="alice", total=18, character_id="c1",
                                                 skill_label="Perception"))
        assert not handled
        return pipeline, session, pending

    def test_mismatch_escalates(self):
        pipeline, session, pending = self._escalate()
        msg = session.outbox.last("Mismatch")
        assert msg.field_value("Expected") == "Stealth"
        assert msg.field_value("Rolled") == "Perception"
        assert msg.has_action("resolvemismatch c1 trap1 accept 18 normal 0")
        assert msg.has_action("resolvemismatch c1 trap1 reject")
        assert pending.stage is CheckStage.AWAITING_MISMATCH_DECISION
        assert _uses(session) == (2, 2, True)

    def test_reject_reprompts(self):
        pipeline, session, pending = self._escalate()
        assert not pipeline.resolve_mismatch("c1", "trap1", "reject")
        assert pending.mismatch is None
        assert pending.stage is CheckStage.AWAITING_ROLL
        assert session.outbox.last().title.endswith("Skill Check Required")
        assert len(session.checks) == 1

    def test_accept_resolves_against_dc(self):
        pipeline, session, pending = self._escalate()
        assert pipeline.resolve_mismatch("c1", "trap1", "accept", 18)
        result = session.outbox.last("Result")
        assert result.field_value("Final Roll") == "18"
        assert result.field_value("Result") == "✅ Success!"
        assert list(session.invoker.invoked) == ["Disarmed"]
        assert len(session.checks) == 0

    def test_accept_uses_held_value(self):
        pipeline, session, pending = self._escalate()
        assert pipeline.resolve_mismatch("c1", "trap1", "accept")
        assert session.outbox.last("Result").field_value("Final Roll") == "18"

    def test_missing_pending(self):
        pipeline, session = _make_pipeline()
        with pytest.raises(CommandError):
            pipeline.resolve_mismatch("c1", "trap1", "accept", 10)


class TestCustomChecks:
    def test_custom_check_flow(self):
        pipeline, session = _make_pipeline()
        trap = session.world.get_token("trap1")
        pipeline.custom_check(trap, "gm")
        assert session.outbox.last("Custom Skill Check").has_action(
            "setcheck trap1 Sleight_of_Hand gm")
        pipeline.set_check(trap, "Sleight_of_Hand", "gm")
        pipeline.set_dc(trap, "10", "gm")
        pending = pipeline.roll_check(trap, "custom", "normal", "gm")
        assert pending.check.skill == "Sleight of Hand"
        assert pending.check.dc == 10
        assert pipeline.handle_roll(RollEvent(player_id="gm", total=11))
        assert session.outbox.last("Result").field_value("Result") == "✅ Success!"

    def test_custom_check_without_dc_warns(self):
        pipeline, session = _make_pipeline()
        trap = session.world.get_token("trap1")
        pipeline.set_check(trap, "Arcana", "gm")
        pipeline.roll_check(trap, "custom", "normal", "gm")
        assert not pipeline.handle_roll(RollEvent(player_id="gm", total=11))
        assert "no DC" in session.outbox.last("Warning").field_value("")
        assert _uses(session) == (2, 2, True)

    def test_set_dc_on_predefined_check(self):
        pipeline, session = _make_pipeline()
        trap = session.world.get_token("trap1")
        pipeline.request_check(trap, 0, "gm")
        pending = pipeline.set_dc(trap, 5, "gm")
        assert pending.check.skill == "Stealth"
        assert pending.check.dc == 5

    def test_set_dc_not_a_number(self):
        pipeline, session = _make_pipeline()
        with pytest.raises(CommandError, match="DC"):
            pipeline.set_dc(session.world.get_token("trap1"), "high", "gm", "Stealth")

    def test_roll_custom_without_custom(self):
        pipeline, session = _make_pipeline()
        with pytest.raises(CommandError, match="custom"):
            pipeline.roll_check(session.world.get_token("trap1"), "custom", "normal", "gm")
