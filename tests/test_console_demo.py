"""Tests for the offline console demo."""

import pytest

from console_demo import ConsoleSession, main


class TestConsoleDemo:
    @pytest.mark.parametrize("scenario", sorted(ConsoleSession.SCENARIOS))
    def test_scenarios_play_to_completion(self, scenario, capsys):
        session = ConsoleSession()
        session.run_scenario(scenario)
        out = capsys.readouterr().out
        assert f"Scenario '{scenario}' complete." in out
        assert session.session.turn_count == len(ConsoleSession.SCENARIOS[scenario])

    def test_filter_scenario_reaches_offer(self):
        session = ConsoleSession()
        session.run_scenario("filter")
        assert session.session.stage_machine.get_stage_trace() == ["GATHERING", "READY_TO_OFFER"]

    def test_blank_input_is_refused(self, capsys):
        session = ConsoleSession()
        assert session._process_input("   ") is None
        assert "message (string) requis" in capsys.readouterr().out

    def test_main_with_scenario(self, capsys):
        main(["--scenario", "stalled"])
        assert "Scenario 'stalled' complete." in capsys.readouterr().out
