"""Tests for the trap descriptor grammar — decode, encode, patch, tags."""

import pytest

from trapsys.descriptor import (
    Action,
    InteractionBehavior,
    Placement,
    PlacementMode,
    SkillCheck,
    StandardBehavior,
    TrapDescriptor,
    TrapKind,
    clear_lock_tag,
    decode_notes,
    encode_descriptor,
    has_ignore_tag,
    is_trap_notes,
    lock_tag_trap,
    parse_descriptor,
    parse_with_warnings,
    patch_notes,
    set_lock_tag,
    strip_ignore_tag,
    toggle_ignore_tag,
    write_descriptor,
)
from trapsys.errors import DescriptorError

STANDARD = ('{!traptrigger uses: 2/3 armed: on primary: Name: "Dart Volley" Macro: DartVolley '
            'options: [Name: "Poison" Macro: PoisonCloud Name: "Net" Macro: NetDrop] '
            'position: (1,0)}')
INTERACTION = ('{!traptrigger uses: 1/1 armed: on type: interaction success: Disarmed '
               'failure: DartVolley checks: "Perception:15,Sleight of Hand:12" {noMovementTrigger}}')


class TestDecode:
    def test_no_marker(self):
        assert parse_descriptor("just some notes") is None
        assert parse_descriptor(None) is None
        assert not is_trap_notes("")

    def test_standard(self):
        d = parse_descriptor(STANDARD)
        assert (d.current_uses, d.max_uses, d.is_armed) == (2, 3, True)
        assert d.kind is TrapKind.STANDARD
        assert d.primary == Action("Dart Volley", "DartVolley")
        assert d.options == (Action("Poison", "PoisonCloud"), Action("Net", "NetDrop"))
        assert d.placement == Placement.cell(1, 0)
        assert d.movement_trigger_enabled
        assert isinstance(d.behavior, StandardBehavior)
        assert [a.ref for a in d.behavior.effects] == ["DartVolley", "PoisonCloud", "NetDrop"]

    def test_interaction(self):
        d = parse_descriptor(INTERACTION)
        assert d.is_interaction
        assert d.success == "Disarmed"
        assert d.failure_ref == "DartVolley"
        assert d.checks == (SkillCheck("Perception", 15), SkillCheck("Sleight of Hand", 12))
        assert not d.movement_trigger_enabled
        assert isinstance(d.behavior, InteractionBehavior)
        assert d.behavior.failure == "DartVolley"

    def test_center_position(self):
        d = parse_descriptor("{!traptrigger uses: 1/1 armed: on position: center}")
        assert d.placement.mode is PlacementMode.CENTER

    def test_surrounding_text_ignored(self):
        d = parse_descriptor("A pit. " + STANDARD + " Watch out.")
        assert d.current_uses == 2
        assert d.extra == ""

    def test_url_and_html_encoded_notes(self):
        encoded = "%7B!traptrigger%20uses%3A%201%2F2%20armed%3A%20on%7D"
        assert decode_notes(encoded).startswith("{!traptrigger")
        d = parse_descriptor(encoded)
        assert (d.current_uses, d.max_uses) == (1, 2)
        d = parse_descriptor("&lt;p&gt;{!traptrigger uses: 1/2 armed: on}&lt;/p&gt;")
        assert d.max_uses == 2


class TestDecodeTolerance:
    def test_missing_fields_default(self):
        d = parse_descriptor("{!traptrigger}")
        assert (d.current_uses, d.max_uses) == (0, 0)
        assert not d.is_armed  # zero uses never stays armed
        assert d.primary.ref == ""

    def test_malformed_uses_warns(self):
        d, warnings = parse_with_warnings("{!traptrigger uses: lots armed: on}")
        assert d.current_uses == 0
        assert any("uses" in w for w in warnings)

    def test_current_above_max_clamped(self):
        d, warnings = parse_with_warnings("{!traptrigger uses: 5/3 armed: on}")
        assert (d.current_uses, d.max_uses) == (3, 3)
        assert warnings

    def test_unknown_type_falls_back(self):
        d, warnings = parse_with_warnings("{!traptrigger uses: 1/1 armed: on type: bogus}")
        assert d.kind is TrapKind.STANDARD
        assert any("bogus" in w for w in warnings)

    def test_malformed_check_entry_skipped(self):
        d, warnings = parse_with_warnings(
            '{!traptrigger uses: 1/1 armed: on type: interaction checks: "Stealth:x,Arcana:10"}')
        assert d.checks == (SkillCheck("Arcana", 10),)
        assert warnings

    def test_unclosed_block(self):
        d = parse_descriptor("{!traptrigger uses: 1/2 armed: off")
        assert (d.current_uses, d.max_uses, d.is_armed) == (1, 2, False)

    def test_bare_marker(self):
        d = parse_descriptor("!traptrigger uses: 1/1 armed: on")
        assert d.is_active

    def test_warnings_are_logged(self, caplog):
        with caplog.at_level("WARNING"):
            parse_descriptor("{!traptrigger uses: 5/3}", source="tok")
        assert "tok" in caplog.text


class TestEncode:
    @pytest.mark.parametrize("notes", [STANDARD, INTERACTION])
    def test_round_trip(self, notes):
        d = parse_descriptor(notes)
        assert parse_descriptor(encode_descriptor(d)) == d

    def test_round_trip_keeps_extension_text(self):
        d = parse_descriptor("{!traptrigger uses: 1/1 armed: on {customFlag} note: keep}")
        assert d.extra == "{customFlag} note: keep"
        again = parse_descriptor(encode_descriptor(d))
        assert again == d
        assert again.extra == d.extra

    def test_canonical_form(self):
        d = TrapDescriptor(current_uses=1, max_uses=2, primary=Action("Pit", "Pit"),
                           placement=Placement.center())
        assert encode_descriptor(d) == (
            '{!traptrigger uses: 1/2 armed: on primary: Name: "Pit" Macro: Pit position: center}')

    def test_write_replaces_block_only(self):
        notes = "Before. " + STANDARD + " After."
        d = TrapDescriptor(current_uses=1, max_uses=1, primary=Action("Pit", "Pit"))
        out = write_descriptor(notes, d)
        assert out.startswith("Before. {!traptrigger uses: 1/1")
        assert out.endswith("} After.")
        assert "DartVolley" not in out

    def test_write_appends_when_absent(self):
        d = TrapDescriptor(current_uses=1, max_uses=1)
        assert write_descriptor("", d) == encode_descriptor(d)
        assert write_descriptor("Old notes", d) == "Old notes " + encode_descriptor(d)


class TestPatch:
    def test_patch_preserves_other_text(self):
        notes = "Intro " + STANDARD + " outro"
        out = patch_notes(notes, uses=(1, 3), armed=False)
        assert out == notes.replace("uses: 2/3", "uses: 1/3").replace("armed: on", "armed: off")

    def test_patch_inserts_missing_fields(self):
        out = patch_notes('{!traptrigger primary: Name: "X" Macro: X}', uses=(1, 1), armed=True)
        d = parse_descriptor(out)
        assert (d.current_uses, d.max_uses, d.is_armed) == (1, 1, True)
        assert d.primary.ref == "X"

    def test_patch_without_block_raises(self):
        with pytest.raises(DescriptorError):
            patch_notes("no trap here", uses=(1, 1))


class TestTags:
    def test_ignore_tag_toggle(self):
        notes, present = toggle_ignore_tag("hero")
        assert present and has_ignore_tag(notes)
        notes, present = toggle_ignore_tag(notes)
        assert not present and not has_ignore_tag(notes)

    def test_strip_ignore_tag(self):
        assert not has_ignore_tag(strip_ignore_tag("a {ignoretraps} b"))

    def test_lock_tag(self):
        notes = set_lock_tag("hero", "trap1")
        assert lock_tag_trap(notes) == "trap1"
        notes = set_lock_tag(notes, "trap2")
        assert lock_tag_trap(notes) == "trap2"
        assert notes.count("traplocked") == 1
        assert clear_lock_tag(notes) == "hero"
