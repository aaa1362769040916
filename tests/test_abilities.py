import json
import logging

from xivlog.combatlog.abilities import AbilityJobMap, normalize_ability_id
from xivlog.combatlog.jobs import is_player_id, job_code_for_id, role_for_job_code


def test_normalize_ability_id():
    assert normalize_ability_id("0x001f") == "1F"
    assert normalize_ability_id("0009") == "9"
    assert normalize_ability_id("0") == "0"
    assert normalize_ability_id("") == ""


def test_bundled_definitions_load():
    table = AbilityJobMap.load_from_dir()
    assert len(table) > 0
    assert table.job_for("9") == "PLD"
    assert table.job_for("0x0009") == "PLD"
    # warrior.json carries a trailing comma
    assert table.job_for("1f") == "WAR"
    assert table.job_for("8D") == "BLM"
    assert table.job_for("FFFF") is None
    assert "7C" in table


def test_conflicts_first_file_wins(tmp_path, caplog):
    (tmp_path / "a_paladin.json").write_text(json.dumps({"job": "Paladin", "actions": [{"AB": "x"}]}), "utf-8")
    (tmp_path / "b_warrior.json").write_text(json.dumps({"job": "Warrior", "actions": [{"0xab": "y"}, {"CD": "z"}]}), "utf-8")

    with caplog.at_level(logging.WARNING, logger="xivlog"):
        table = AbilityJobMap.load_from_dir(tmp_path)

    assert table.job_for("AB") == "PLD"
    assert table.job_for("CD") == "WAR"
    assert any("conflict" in r.getMessage() for r in caplog.records)


def test_bad_files_are_skipped(tmp_path):
    (tmp_path / "broken.json").write_text("{not json", "utf-8")
    (tmp_path / "unknown.json").write_text(json.dumps({"job": "Blue Mage", "actions": [{"11": "x"}]}), "utf-8")
    (tmp_path / "weird.json").write_text(json.dumps({"job": "Monk", "actions": [{"zz": "x"}, "35", {"35": "Bootshine"}]}), "utf-8")

    table = AbilityJobMap.load_from_dir(tmp_path)
    assert dict(table) == {"35": "MNK"}


def test_missing_directory_gives_empty_map(tmp_path):
    table = AbilityJobMap.load_from_dir(tmp_path / "nope")
    assert len(table) == 0
    assert table.job_for("9") is None


def test_job_tables():
    assert job_code_for_id(19) == "PLD"
    assert job_code_for_id(42) == "PCT"
    assert job_code_for_id(1) is None
    assert job_code_for_id(None) is None
    assert role_for_job_code("GNB") == "T"
    assert role_for_job_code("SGE") == "H"
    assert role_for_job_code("VPR") == "D"
    assert role_for_job_code("XXX") is None
    assert is_player_id("10FF0001")
    assert not is_player_id("40000001")
    assert not is_player_id("")


def test_prefixed_and_padded_ids_in_definitions(tmp_path):
    (tmp_path / "warrior.json").write_text(
        json.dumps({"job": "Warrior", "actions": [{"0x1F": "Heavy Swing"}, {"0x0025": "Maim"}]}), "utf-8"
    )
    table = AbilityJobMap.load_from_dir(tmp_path)
    assert dict(table) == {"1F": "WAR", "25": "WAR"}
    assert table.job_for("1f") == "WAR"
