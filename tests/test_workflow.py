"""End-to-end tests for the processing pipelines, using fake providers."""

import copy
import tempfile
from pathlib import Path

import pytest

from notelink.config import DEFAULT_CONFIG
from notelink.errors import ConfigurationError, TaskCancelledError, TransientError
from notelink.failures import FailureLog
from notelink.index.store import MasterIndexStore
from notelink.models import BatchInfo, FailureKind, TaskStatus
from notelink.pipeline.similarity import cosine_similarity, similar_pairs
from notelink.pipeline.workflow import Workflow
from notelink.vault.frontmatter import BOUNDARY_MARKER, get_document_id, parse_frontmatter

A_VEC = [1.0, 0.0]
B_VEC = [0.92, 0.392]   # cosine with A_VEC is 0.92
FAR_VEC = [0.0, 1.0]


def _config(tmpdir, tagging=False):
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["vault_path"] = str(Path(tmpdir) / "vault")
    cfg["cache_path"] = str(Path(tmpdir) / "cache")
    cfg["linking"] = {"similarity_threshold": 0.85, "min_ai_score": 5, "max_links_per_document": 7}
    cfg["tagging"]["enabled"] = tagging
    cfg["index"]["flush_debounce"] = 0
    return cfg


def _write(vault, name, doc_id, body):
    path = vault / f"{name}.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"---\nnote_id: {doc_id}\n---\n{body}\n")
    return path


def _workflow(config, embedder, llm):
    wf = Workflow.from_config(config)
    wf._embedder = embedder
    wf._llm = llm
    return wf


def _setup(tmpdir, embedder, llm, tagging=False):
    config = _config(tmpdir, tagging=tagging)
    vault = Path(config["vault_path"])
    _write(vault, "a", "a", "Alpha content")
    _write(vault, "b", "b", "Beta content")
    embedder.vectors.update({"Alpha content": A_VEC, "Beta content": B_VEC})
    llm.set_score("a", "b", 8)
    return config, vault, _workflow(config, embedder, llm)


def test_similarity_is_clamped_and_canonical():
    assert cosine_similarity([1, 0], [-1, 0]) == 0.0
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    pairs = similar_pairs({"b": A_VEC, "a": B_VEC, "c": FAR_VEC}, ["b", "a"], 0.85)
    assert [(p.id_1, p.id_2) for p in pairs] == [("a", "b")]
    assert pairs[0].similarity_score == pytest.approx(0.92, abs=1e-3)


def test_new_documents_get_scored_and_linked(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config, vault, wf = _setup(tmpdir, fake_embedder, fake_llm)
        summary = wf.run()

        assert summary.embedded == 2
        assert summary.pairs_scored == 1
        pair = wf.store.get_pair("a", "b")
        assert pair.ai_score == 8
        assert pair.similarity_score == pytest.approx(0.92, abs=1e-3)

        a_text = (vault / "a.md").read_text()
        b_text = (vault / "b.md").read_text()
        assert a_text.endswith(f"{BOUNDARY_MARKER}\n- [[b]]\n")
        assert b_text.endswith(f"{BOUNDARY_MARKER}\n")
        assert wf.store.ledger_targets("a") == ["b"]
        assert wf.store.ledger_targets("b") == []
        assert (summary.links_added, summary.links_removed) == (1, 0)
        assert wf.tasks.last_task.status == TaskStatus.COMPLETED

        # Persisted
        reloaded = MasterIndexStore(config["cache_path"], flush_debounce=0)
        reloaded.load(create_if_missing=False)
        assert reloaded.ledger_targets("a") == ["b"]
        assert reloaded.embedding_count() == 2


def test_unchanged_documents_are_not_reprocessed(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config, vault, wf = _setup(tmpdir, fake_embedder, fake_llm)
        wf.run()
        calls = len(fake_embedder.calls)
        summary = wf.run()
        assert summary.embedded == 0
        assert summary.pairs_scored == 0
        assert len(fake_embedder.calls) == calls
        assert len(fake_llm.score_calls) == 1


def test_changed_document_loses_link_when_rescored_low(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config, vault, wf = _setup(tmpdir, fake_embedder, fake_llm)
        wf.run()

        _write(vault, "a", "a", "Alpha content, rewritten")
        fake_embedder.vectors["Alpha content, rewritten"] = A_VEC
        fake_llm.set_score("a", "b", 3)
        summary = wf.run()

        assert summary.embedded == 1
        assert (summary.links_added, summary.links_removed) == (0, 1)
        assert wf.store.get_pair("a", "b").ai_score == 3
        assert wf.store.ledger_targets("a") == []
        assert "[[b]]" not in (vault / "a.md").read_text()


def test_prior_embedding_failure_forces_retry(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config, vault, wf = _setup(tmpdir, fake_embedder, fake_llm)
        _write(vault, "c", "c", "Gamma content")
        fake_embedder.vectors["Gamma content"] = FAR_VEC
        wf.run()
        assert wf.store.get_document("c") is not None

        wf.failures.record(FailureKind.EMBEDDING, BatchInfo(items=["c"]), TransientError("Server error: 503", 503))
        fake_embedder.calls.clear()
        summary = wf.run()

        assert fake_embedder.calls == ["Gamma content"]
        assert summary.embedded == 1
        assert wf.failures.unresolved_by_kind(FailureKind.EMBEDDING) == []


def test_transient_embedding_failure_is_recorded_and_retried(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config, vault, wf = _setup(tmpdir, fake_embedder, fake_llm)
        fake_embedder.fail_on.add("Beta content")
        summary = wf.run()

        assert summary.embedded == 1
        assert summary.embedding_failures == 1
        assert wf.store.get_document("b") is None
        assert wf.failures.unresolved_by_kind(FailureKind.EMBEDDING) == ["b"]
        assert wf.failures.entries()[0].batch.display_items == ["b.md"]

        fake_embedder.fail_on.clear()
        summary = wf.run()
        assert summary.embedded == 1
        assert wf.failures.unresolved_by_kind(FailureKind.EMBEDDING) == []
        assert wf.store.ledger_targets("a") == ["b"]


def test_scoring_failure_is_retried_on_next_run(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config, vault, wf = _setup(tmpdir, fake_embedder, fake_llm)
        fake_llm.fail = True
        summary = wf.run()

        assert summary.scoring_failures == 1
        assert wf.store.get_pair("a", "b") is None
        assert wf.failures.unresolved_by_kind(FailureKind.SCORING) == ["a:b"]
        assert wf.failures.entries()[0].batch.display_items == ["a.md <-> b.md"]

        fake_llm.fail = False
        summary = wf.run()
        assert summary.embedded == 0
        assert summary.pairs_scored == 1
        assert wf.failures.unresolved_by_kind(FailureKind.SCORING) == []
        assert wf.store.ledger_targets("a") == ["b"]


def test_run_assigns_ids_and_boundaries(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _config(tmpdir)
        vault = Path(config["vault_path"])
        vault.mkdir()
        (vault / "plain.md").write_text("No front matter here")
        original = _write(vault, "orig", "same-id", "Original")
        (vault / "copy.md").write_text(original.read_text())
        wf = _workflow(config, fake_embedder, fake_llm)

        summary = wf.run()
        plain = (vault / "plain.md").read_text()
        assert get_document_id(plain)
        assert plain.rstrip().endswith(BOUNDARY_MARKER)
        assert summary.boundaries_added == 3

        ids = {get_document_id((vault / f"{n}.md").read_text()) for n in ("plain", "orig", "copy")}
        assert len(ids) == 3
        assert summary.ids_assigned == 2


def test_copied_document_gets_fresh_id_and_original_keeps_its_own(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config, vault, wf = _setup(tmpdir, fake_embedder, fake_llm)
        wf.run()
        (vault / "0-copy-of-b.md").write_text((vault / "b.md").read_text())
        wf.run()
        assert get_document_id((vault / "b.md").read_text()) == "b"
        assert get_document_id((vault / "0-copy-of-b.md").read_text()) != "b"
        assert wf.store.get_document("b").location == "b.md"


def test_external_move_updates_location(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config, vault, wf = _setup(tmpdir, fake_embedder, fake_llm)
        wf.run()
        (vault / "moved").mkdir()
        (vault / "b.md").rename(vault / "moved" / "Bee.md")
        fake_embedder.calls.clear()
        wf.run()
        assert wf.store.get_document("b").location == "moved/Bee.md"
        assert fake_embedder.calls == []
        assert (vault / "a.md").read_text().endswith(f"{BOUNDARY_MARKER}\n- [[Bee]]\n")


def test_apply_changes_rename_rewrites_linking_documents(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config, vault, wf = _setup(tmpdir, fake_embedder, fake_llm)
        wf.run()
        (vault / "b.md").rename(vault / "Bee.md")
        result = wf.apply_changes(moves=[("b.md", "Bee.md")])
        assert (result.added, result.removed) == (0, 0)
        assert wf.store.get_document("b").location == "Bee.md"
        assert "- [[Bee]]" in (vault / "a.md").read_text()


def test_apply_changes_delete_removes_document_everywhere(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config, vault, wf = _setup(tmpdir, fake_embedder, fake_llm)
        wf.run()
        (vault / "b.md").unlink()
        wf.apply_changes(deletes=["b.md"])
        assert wf.store.get_document("b") is None
        assert wf.store.get_pair("a", "b") is None
        assert wf.store.ledger_targets("a") == []
        assert "[[b]]" not in (vault / "a.md").read_text()


def test_clean_removes_orphans_and_their_links(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config, vault, wf = _setup(tmpdir, fake_embedder, fake_llm)
        wf.run()
        (vault / "b.md").unlink()
        assert wf.health().orphans == ["b.md"]
        assert wf.store.index.stats.orphaned_documents == 1
        stats = wf.clean()
        assert stats == {"orphans_removed": 1, "links_removed": 1, "documents_updated": 1}
        assert wf.store.index.stats.orphaned_documents == 0
        assert wf.store.get_document("b") is None
        assert not wf.store.has_embedding("b")
        assert "[[b]]" not in (vault / "a.md").read_text()


def test_recalibrate_applies_new_thresholds(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config, vault, wf = _setup(tmpdir, fake_embedder, fake_llm)
        wf.run()
        wf.thresholds.min_ai_score = 9
        result = wf.recalibrate()
        assert (result.added, result.removed) == (0, 1)
        assert wf.store.ledger_targets("a") == []
        assert len(fake_llm.score_calls) == 1


def test_sync_hashes_accepts_edits_without_embedding(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config, vault, wf = _setup(tmpdir, fake_embedder, fake_llm)
        wf.run()
        _write(vault, "a", "a", "Alpha content with a typo fixed")
        stats = wf.sync_hashes()
        assert stats["updated"] == 1
        fake_embedder.calls.clear()
        summary = wf.run()
        assert summary.embedded == 0
        assert fake_embedder.calls == []


def test_tags_are_written_to_frontmatter(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config, vault, wf = _setup(tmpdir, fake_embedder, fake_llm, tagging=True)
        summary = wf.run()
        assert summary.tagged == 2
        fm = parse_frontmatter((vault / "a.md").read_text())
        assert fm.data["tags"] == ["alpha", "beta", "gamma"]
        assert fm.data["note_id"] == "a"
        record = wf.store.get_document("a")
        assert record.tags == ["alpha", "beta", "gamma"]
        assert record.tags_generated_at is not None

        # Tagging touches only front matter, so nothing is re-embedded
        fake_embedder.calls.clear()
        summary = wf.run()
        assert fake_embedder.calls == []
        assert summary.tagged == 0


def test_tag_failure_recorded_and_retried(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config, vault, wf = _setup(tmpdir, fake_embedder, fake_llm)
        wf.run()
        fake_llm.fail = True
        summary = wf.tag()
        assert summary.tagging_failures == 1
        assert sorted(wf.failures.unresolved_by_kind(FailureKind.TAGGING)) == ["a", "b"]

        fake_llm.fail = False
        summary = wf.tag()
        assert summary.tagged == 2
        assert wf.failures.unresolved_by_kind(FailureKind.TAGGING) == []


def test_cancellation_keeps_completed_work(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config, vault, wf = _setup(tmpdir, fake_embedder, fake_llm)
        fake_llm.on_call = wf.tasks.request_cancellation
        with pytest.raises(TaskCancelledError):
            wf.run()
        assert wf.tasks.last_task.status == TaskStatus.CANCELLED
        assert wf.tasks.current_task is None

        reloaded = MasterIndexStore(config["cache_path"], flush_debounce=0)
        reloaded.load(create_if_missing=False)
        assert set(reloaded.index.documents) == {"a", "b"}
        assert reloaded.get_pair("a", "b").ai_score == 8

        # Links were never written, so both documents are embedded and scored again
        fake_llm.on_call = None
        summary = wf.run()
        assert summary.embedded == 2
        assert summary.pairs_scored == 1
        assert wf.store.ledger_targets("a") == ["b"]
        assert (vault / "a.md").read_text().endswith(f"{BOUNDARY_MARKER}\n- [[b]]\n")


def test_cancel_after_embedding_rescores_on_next_run(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config, vault, wf = _setup(tmpdir, fake_embedder, fake_llm)
        wf.run()
        assert wf.store.ledger_targets("a") == ["b"]

        _write(vault, "a", "a", "Alpha content, rewritten")
        fake_embedder.vectors["Alpha content, rewritten"] = A_VEC
        fake_llm.set_score("a", "b", 3)
        fake_embedder.on_call = wf.tasks.request_cancellation
        with pytest.raises(TaskCancelledError):
            wf.run()
        assert wf.store.get_pair("a", "b") is None

        fake_embedder.on_call = None
        summary = wf.run()
        assert summary.embedded == 1
        assert summary.pairs_scored == 1
        assert wf.store.get_pair("a", "b").ai_score == 3
        assert wf.store.ledger_targets("a") == []
        assert "[[b]]" not in (vault / "a.md").read_text()

        # Once linked, the document is not reprocessed again
        summary = wf.run()
        assert summary.embedded == 0


def test_undecodable_document_is_skipped_and_left_untouched(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config, vault, wf = _setup(tmpdir, fake_embedder, fake_llm)
        raw = b"---\nnote_id: latin\n---\nSome caf\xe9 bytes"
        (vault / "latin.md").write_bytes(raw)
        summary = wf.run()
        assert summary.skipped == 1
        assert summary.scanned == 2
        assert (vault / "latin.md").read_bytes() == raw
        assert wf.store.get_document("latin") is None


def test_configuration_error_fails_the_task(fake_embedder):
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _config(tmpdir)
        vault = Path(config["vault_path"])
        _write(vault, "a", "a", "Alpha content")
        _write(vault, "b", "b", "Beta content")
        fake_embedder.vectors.update({"Alpha content": A_VEC, "Beta content": B_VEC})
        config.pop("claude_api_key", None)
        wf = Workflow.from_config(config)
        wf._embedder = fake_embedder

        with pytest.raises(ConfigurationError):
            wf.run()
        assert wf.tasks.last_task.status == TaskStatus.FAILED
        # Embeddings finished before the failure were kept
        assert wf.store.get_document("a") is not None


def test_related_query(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config, vault, wf = _setup(tmpdir, fake_embedder, fake_llm)
        wf.run()
        related = wf.related("b.md")
        assert [(rec.id, pair.ai_score) for rec, pair in related] == [("a", 8)]


def test_health_reports_problems(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config, vault, wf = _setup(tmpdir, fake_embedder, fake_llm)
        wf.run()
        (vault / "new.md").write_text("Not processed yet")
        (vault / "b.md").unlink()
        report = wf.health()
        assert report.missing_ids == ["new.md"]
        assert report.missing_boundary == ["new.md"]
        assert report.orphans == ["b.md"]
        assert not report.healthy


def test_failure_log_lives_in_cache(fake_embedder, fake_llm):
    with tempfile.TemporaryDirectory() as tmpdir:
        config, vault, wf = _setup(tmpdir, fake_embedder, fake_llm)
        fake_llm.fail = True
        wf.run()
        log = FailureLog(Path(config["cache_path"]) / "failures.json")
        assert log.unresolved_count() == 1
