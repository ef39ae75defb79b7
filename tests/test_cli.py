import json
import sys

import pytest

from bingeboard import cli
from bingeboard.platforms import build_aggregate, make_record


RATINGS_CSV = """user,item,rating
alice,breaking-bad,5
alice,the-wire,4
alice,friends,2
bob,breaking-bad,4
bob,friends,3
bob,the-office,5
carol,the-wire,5
carol,the-office,2
carol,friends,4
dave,not-a-number,oops
,missing-user,3
"""


def test_main_dispatches_to_subcommand(monkeypatch):
    called = {}

    def fake_availability(args):
        called["command"] = args.command
        called["title_id"] = args.title_id
        called["media_type"] = args.media_type

    monkeypatch.setattr(cli, "cmd_availability", fake_availability)
    monkeypatch.setattr(sys, "argv", ["prog", "availability", "1399", "--media-type", "movie"])

    cli.main()

    assert called == {"command": "availability", "title_id": "1399", "media_type": "movie"}


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_read_ratings_csv_skips_bad_rows(tmp_path):
    path = tmp_path / "ratings.csv"
    path.write_text(RATINGS_CSV, encoding="utf-8")

    ratings = cli._read_ratings_csv(path)

    assert set(ratings) == {"alice", "bob", "carol"}
    assert ratings["alice"][0] == {"item_id": "breaking-bad", "rating": 5.0}
    assert sum(len(v) for v in ratings.values()) == 9


def test_train_writes_model_and_skips_unchanged_retrain(tmp_path, capsys):
    ratings = tmp_path / "ratings.csv"
    ratings.write_text(RATINGS_CSV, encoding="utf-8")
    output = tmp_path / "models" / "als.npz"

    cli.main(["train", str(ratings), "--output", str(output), "--factors", "2", "--max-iter", "10", "--quiet"])

    summary = json.loads(capsys.readouterr().out)
    assert output.exists()
    assert summary["users"] == 3
    assert summary["items"] == 4
    assert summary["iterations"] >= 1

    cli.main(["train", str(ratings), "--output", str(output), "--factors", "2", "--max-iter", "10", "--quiet"])
    assert capsys.readouterr().out == ""


def test_score_ranks_titles(tmp_path, capsys, sample_user_dict, sample_content_dict):
    user_path = tmp_path / "user.json"
    titles_path = tmp_path / "titles.json"
    user_path.write_text(json.dumps(sample_user_dict), encoding="utf-8")
    titles_path.write_text(json.dumps([
        sample_content_dict,
        {"tmdbId": 2316, "genres": ["Comedy"], "overview": "An office of misfits.", "avgRating": 8.5},
        {"tmdbId": 60625, "genres": ["Animation", "Comedy"], "avgRating": 9.1},
    ]), encoding="utf-8")

    cli.main(["score", str(user_path), str(titles_path), "--limit", "2", "--model-dir", str(tmp_path)])

    ranked = json.loads(capsys.readouterr().out)
    assert len(ranked) == 2
    assert ranked[0]["score"] >= ranked[1]["score"]
    assert all(0.0 <= r["score"] <= 1.0 for r in ranked)


def test_aggregate_output_adds_links_for_user():
    agg = build_aggregate(1, "Show", "tv", [
        make_record(8, "Netflix", "sub", "tmdb", web_url="https://netflix.com/x"),
    ], {"tmdb": True})

    plain = cli._aggregate_output(agg, None)
    assert "links" not in plain

    out = cli._aggregate_output(agg, "user-1")
    assert out["links"]["Netflix"].startswith("https://netflix.com/x?trkid=")
    assert out["monetization"]["affiliate_platforms"] == 1
    assert out["monetization"]["top_affiliate_platforms"] == ["Netflix"]
