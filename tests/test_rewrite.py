"""Tests for the variant and final rewrite pipeline."""

import json

from conftest import FakeClient
from runner.process.prompt_context import LinkReference
from runner.process.rewrite import (
    RewriteInput,
    RewritePipeline,
    fallback_body,
    length_floor,
    length_target,
    missing_numeric_tokens,
    numeric_tokens,
    parse_json_response,
    resolve_variant_target_count,
)

SOURCE = "Alcaraz won 6-4, 7-5 over Sinner."
SINNER = LinkReference(text="Sinner", url="https://example.com/sinner")


def variants_reply(*bodies):
    return {"variants": [{"title": f"Angle {i + 1}", "excerpt": "Dek", "body": b} for i, b in enumerate(bodies)]}


class TestHelpers:
    def test_numeric_tokens(self):
        tokens = numeric_tokens("Alcaraz won 6-4 in set 2 of the 2024 final, then 7-6(5).")
        assert set(tokens) >= {"6-4", "2", "2024", "7-6(5)"}

    def test_numeric_tokens_deduplicated(self):
        assert numeric_tokens("6-4 then 6-4") == ["6-4"]

    def test_missing_numeric_tokens_ignores_markup(self):
        assert missing_numeric_tokens("<p>won 6-4</p>", ["6-4", "2024"]) == ["2024"]

    def test_parse_json_response(self):
        assert parse_json_response('{"title": "x"}') == {"title": "x"}
        assert parse_json_response('```json\n{"title": "x"}\n```') == {"title": "x"}
        assert parse_json_response("[1, 2]") == {}
        assert parse_json_response("not json") == {}
        assert parse_json_response(None) == {}

    def test_variant_count_policy(self, settings):
        assert resolve_variant_target_count("ATP Tour", settings) == 2
        assert resolve_variant_target_count("WTA News", settings) == 2
        assert resolve_variant_target_count("ESPN Tennis", settings) == 3
        assert resolve_variant_target_count(None, settings) == 3

    def test_fallback_body(self):
        assert fallback_body("One.\n\nTwo & three.") == "<p>One.</p>\n<p>Two &amp; three.</p>"
        assert fallback_body(None) == ""

    def test_length_targets(self):
        inp = RewriteInput(title="t", body_text="x" * 1000)
        assert length_target(inp, final=False) == 1150
        assert length_target(inp, final=True) == 1200
        assert length_floor(700) == 420
        assert length_floor(100) == 400


class TestRewritePipeline:
    def test_end_to_end_keeps_scores_and_links(self, settings):
        body = f"<p>{SOURCE}</p>"
        client = FakeClient(
            {
                "article:variants": variants_reply(body, body),
                "article:final": {"title": "Alcaraz edges Sinner", "excerpt": "Straight sets", "body": body},
            }
        )
        pipeline = RewritePipeline(client, settings)
        inp = RewriteInput(title="Alcaraz beats Sinner", body_text=SOURCE, links=[SINNER])

        variants = pipeline.generate_variants(inp, 2)
        final = pipeline.synthesize_final(variants, inp)

        assert [v.title for v in variants] == ["Angle 1", "Angle 2"]
        assert "6-4" in final["body"] and "7-5" in final["body"]
        assert 'href="https://example.com/sinner"' in final["body"]
        assert ">Sinner</a>" in final["body"]
        assert final["title"] == "Alcaraz edges Sinner"
        assert final["provider"] == "fake-llm"
        assert final["model"] == "fake-model"

    def test_prompt_lists_numeric_tokens_and_links(self, settings):
        client = FakeClient({"article:variants": variants_reply("<p>x</p>")})
        pipeline = RewritePipeline(client, settings)
        inp = RewriteInput(title="Final", body_text="Alcaraz won 6-4 in set 2 of the 2024 final.", links=[SINNER])

        pipeline.generate_variants(inp, 1)

        prompt = client.calls[0]["prompt"]
        assert client.calls[0]["label"] == "article:variants"
        assert "Preserve numeric values exactly: 6-4, 2, 2024" in prompt
        assert "Sinner -> https://example.com/sinner" in prompt

    def test_missing_numbers_are_reported(self, settings, capsys):
        client = FakeClient({"article:final": {"body": "<p>Alcaraz won in straight sets.</p>"}})
        pipeline = RewritePipeline(client, settings)
        inp = RewriteInput(title="t", body_text=SOURCE)

        pipeline.synthesize_final([], inp)

        assert "AI_NUMERIC_MISSING tokens=6-4,7-5" in capsys.readouterr().err

    def test_empty_reply_falls_back_to_source(self, settings):
        client = FakeClient(default="")
        pipeline = RewritePipeline(client, settings)
        inp = RewriteInput(title="t", body_text="Para one.\n\nPara two.")

        variants = pipeline.generate_variants(inp, 3)
        final = pipeline.synthesize_final(variants, inp)

        assert len(variants) == 1
        assert variants[0].body == "<p>Para one.</p>\n<p>Para two.</p>"
        assert "Para one." in final["body"] and "Para two." in final["body"]

    def test_empty_json_object_is_not_a_body(self, settings):
        pipeline = RewritePipeline(FakeClient(default="{}"), settings)
        variants = pipeline.generate_variants(RewriteInput(title="t", body_text="Source."), 2)
        assert variants[0].body == "<p>Source.</p>"

    def test_plain_text_reply_used_as_body(self, settings):
        client = FakeClient({"article:variants": "<p>Plain reply</p>"})
        variants = RewritePipeline(client, settings).generate_variants(RewriteInput(title="t"), 2)
        assert variants[0].body == "<p>Plain reply</p>"

    def test_variants_capped_at_count(self, settings):
        client = FakeClient({"article:variants": variants_reply("<p>a</p>", "<p>b</p>", "<p>c</p>")})
        variants = RewritePipeline(client, settings).generate_variants(RewriteInput(title="t"), 2)
        assert [v.body for v in variants] == ["<p>a</p>", "<p>b</p>"]

    def test_short_drafts_expanded_up_to_three_times(self, settings):
        client = FakeClient({"article:variants": variants_reply("<p>short</p>")})
        RewritePipeline(client, settings).generate_variants(RewriteInput(title="t"), 1)

        labels = [c["label"] for c in client.calls]
        assert labels == ["article:variants"] + ["article:variant#1:expand"] * 3

    def test_longer_expansion_is_kept(self, settings):
        long_body = "<p>" + "Deep tactical detail. " * 30 + "</p>"
        client = FakeClient(
            {
                "article:final": {"title": "t", "body": "<p>short</p>"},
                "article:final:expand": json.dumps({"body": long_body}),
            }
        )
        final = RewritePipeline(client, settings).synthesize_final([], RewriteInput(title="t"))

        labels = [c["label"] for c in client.calls]
        assert labels == ["article:final", "article:final:expand"]
        assert "Deep tactical detail." in final["body"]

    def test_shorter_expansion_is_discarded(self, settings):
        client = FakeClient(
            {
                "article:final": {"title": "t", "body": "<p>a reasonably sized body</p>"},
                "article:final:expand": {"body": "<p>tiny</p>"},
            }
        )
        final = RewritePipeline(client, settings).synthesize_final([], RewriteInput(title="t"))
        assert "a reasonably sized body" in final["body"]
