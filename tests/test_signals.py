"""Tests for signal extraction and the pattern table."""

import json

import pytest

from refap.conversation.signals import (
    DEFAULT_PATTERN_TABLE,
    InvalidSignalPatternError,
    Signal,
    compile_patterns,
    extract_signals,
    load_signal_patterns,
)


class TestExtractSignals:
    def test_filter_light_power_loss_short_trips(self):
        signals = extract_signals("voyant FAP allumé, perte de puissance, trajets courts en ville")
        assert signals.has(Signal.FILTER_LIGHT)
        assert signals.has(Signal.POWER_LOSS)
        assert signals.has(Signal.SHORT_TRIPS)
        assert not signals.has(Signal.NON_DRIVABLE)

    def test_stalling_is_non_drivable(self):
        signals = extract_signals("ça cale et ne démarre plus")
        assert signals.has(Signal.NON_DRIVABLE)

    @pytest.mark.parametrize("text", [
        "fumée noire en ville, mais elle ne cale pas et roule bien",
        "elle cale pas",
        "elle n'est plus immobilisée",
        "pas en panne, juste un voyant",
        "elle ne cale jamais",
    ])
    def test_negated_stalling_is_not_non_drivable(self, text):
        assert not extract_signals(text).has(Signal.NON_DRIVABLE)

    def test_negation_stays_in_its_clause(self):
        signals = extract_signals("elle ne fume pas, elle cale")
        assert signals.has(Signal.NON_DRIVABLE)

    def test_negated_symptoms_do_not_fire(self):
        signals = extract_signals("pas de perte de puissance, aucune fumée noire")
        assert not signals.has(Signal.POWER_LOSS)
        assert not signals.has(Signal.SMOKE_BLACK)

    def test_plus_alone_does_not_negate(self):
        assert extract_signals("de plus en plus de fumée noire").has(Signal.SMOKE_BLACK)

    def test_fault_codes_ignore_negation(self):
        assert extract_signals("pas P2002 mais P0401").fault_codes == ("P2002", "P0401")

    def test_accents_and_case_are_folded(self):
        signals = extract_signals("FUMÉE NOIRE à l'accélération, MODE DÉGRADÉ")
        assert signals.has(Signal.SMOKE_BLACK)
        assert signals.has(Signal.POWER_LOSS)

    def test_fault_codes_are_collected_uppercase(self):
        signals = extract_signals("la valise sort p2002 et P0401, puis encore p2002")
        assert signals.has(Signal.FAULT_CODE)
        assert signals.fault_codes == ("P2002", "P0401")

    def test_highway_signal(self):
        signals = extract_signals("je fais surtout de l'autoroute")
        assert signals.has(Signal.HIGHWAY)
        assert not signals.has(Signal.SHORT_TRIPS)

    def test_adblue_variants(self):
        assert extract_signals("message AdBlue au démarrage").has(Signal.ADBLUE)
        assert extract_signals("niveau ad-blue bas").has(Signal.ADBLUE)

    def test_self_capable(self):
        assert extract_signals("je peux le démonter moi-même").has(Signal.SELF_CAPABLE)

    def test_empty_text_raises_nothing(self):
        signals = extract_signals("")
        assert signals.active == frozenset()
        assert signals.fault_codes == ()

    def test_none_text_is_tolerated(self):
        assert extract_signals(None).active == frozenset()

    def test_idempotent(self):
        text = "voyant moteur, fumée blanche, code P2463"
        assert extract_signals(text) == extract_signals(text)

    def test_contains_accepts_plain_names(self):
        signals = extract_signals("voyant FAP")
        assert "filter_light" in signals
        assert Signal.FILTER_LIGHT in signals
        assert 42 not in signals

    def test_as_dict_lists_every_signal(self):
        flags = extract_signals("voyant FAP").as_dict()
        assert flags["filter_light"] is True
        assert flags["non_drivable"] is False
        assert set(flags) == {s.value for s in Signal}


class TestPatternTable:
    def test_default_table_compiles(self):
        compiled = compile_patterns(DEFAULT_PATTERN_TABLE)
        assert [p.signal for p in compiled] == [s.value for s, _ in DEFAULT_PATTERN_TABLE]

    def test_bad_regex_raises(self):
        with pytest.raises(InvalidSignalPatternError, match="broken"):
            compile_patterns([("broken", "(unclosed")])

    def test_no_path_returns_default_table(self):
        assert len(load_signal_patterns(None)) == len(DEFAULT_PATTERN_TABLE)

    def test_load_from_json(self, tmp_path):
        path = tmp_path / "patterns.json"
        path.write_text(json.dumps([
            {"signal": "filter_light", "pattern": "voyant"},
            {"signal": "custom_flag", "pattern": "bruit"},
        ]), encoding="utf-8")
        patterns = load_signal_patterns(str(path))
        signals = extract_signals("un bruit et un voyant", patterns)
        assert signals.has("custom_flag")
        assert signals.has(Signal.FILTER_LIGHT)

    def test_load_negatable_flag(self, tmp_path):
        path = tmp_path / "patterns.json"
        path.write_text(json.dumps([
            {"signal": "noise", "pattern": "bruit"},
            {"signal": "noise_raw", "pattern": "bruit", "negatable": False},
        ]), encoding="utf-8")
        signals = extract_signals("pas de bruit", load_signal_patterns(str(path)))
        assert signals.fired == ("noise_raw",)

    def test_fault_code_row_is_not_negatable(self):
        compiled = {p.signal: p for p in compile_patterns(DEFAULT_PATTERN_TABLE)}
        assert compiled["fault_code"].negatable is False
        assert compiled["non_drivable"].negatable is True

    def test_load_rejects_incomplete_rows(self, tmp_path):
        path = tmp_path / "patterns.json"
        path.write_text(json.dumps([{"signal": "x"}]), encoding="utf-8")
        with pytest.raises(InvalidSignalPatternError):
            load_signal_patterns(str(path))

    def test_fired_keeps_table_order(self):
        signals = extract_signals("trajets courts, voyant FAP, perte de puissance")
        assert signals.fired == ("power_loss", "filter_light", "short_trips")
