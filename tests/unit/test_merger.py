"""
Unit tests for merge and merge statistics
"""

import pytest
import os
import sys

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.types import RecordSet
from reconcile.merger import classify, merge, statistics
from reconcile.options import DuplicateStrategy
from tests.helpers import FIXED_NOW, deterministic_options, mk, ph, records, with_photos


def _scenario():
    """Target: two markers (one with photos). Source: one near-duplicate, one new."""
    t1, tp1 = with_photos("t1", 100, 100, ["IMG_1.jpg", "IMG_2.jpg"], label="Door")
    t2 = mk("t2", 400, 300, label="Window")
    target = records([t1, t2], tp1)

    s1, sp1 = with_photos("s1", 102, 101, ["img_1.JPG", "IMG_3.jpg"], label="door")
    s2, sp2 = with_photos("s2", 700, 500, ["IMG_9.jpg"], label="Stairs")
    source = records([s1, s2], sp1 + sp2)
    return target, source


class TestMergeBasics:
    """Completeness and target preservation"""

    def test_counts(self):
        """One duplicate, one new, colliding photo skipped"""
        target, source = _scenario()
        res = merge(target, source, deterministic_options())
        st = res.stats
        assert st.duplicate_markers == 1
        assert st.new_markers == 1
        assert st.duplicate_photos == 1
        assert st.new_photos == 2
        assert st.updated_markers == 1
        assert st.total_source_markers == 2
        assert st.total_source_photos == 3
        assert st.matched_by == {"coordinates": 1}

    def test_result_sizes(self):
        """|result| = |target| + new markers; photos = target photos + added photos"""
        target, source = _scenario()
        res = merge(target, source, deterministic_options())
        assert len(res.result.markers) == len(target.markers) + res.stats.new_markers
        assert len(res.result.photos) == len(target.photos) + res.stats.new_photos

    def test_target_markers_preserved(self):
        """Every target marker survives with id, position and refs (refs may grow)"""
        target, source = _scenario()
        out = merge(target, source, deterministic_options()).result
        by_id = {m.id: m for m in out.markers}
        for t in target.markers:
            m = by_id[t.id]
            assert (m.x, m.y) == (t.x, t.y)
            assert set(t.photo_refs) <= set(m.photo_refs)
        assert [m.id for m in out.markers[:2]] == ["t1", "t2"]

    def test_reference_invariant_holds(self):
        """All photo refs resolve and point back"""
        target, source = _scenario()
        out = merge(target, source, deterministic_options()).result
        assert out.reference_problems() == []

    def test_duplicate_gains_photos(self):
        """Matched target marker gets the non-colliding source photo"""
        target, source = _scenario()
        out = merge(target, source, deterministic_options()).result
        t1 = out.markers[0]
        added = [p for p in out.photos if p.id in t1.photo_refs and p.id not in target.markers[0].photo_refs]
        assert [p.filename for p in added] == ["IMG_3.jpg"]
        assert all(p.marker_id == "t1" for p in added)

    def test_new_marker_fresh_ids(self):
        """Appended markers and their photos get fresh ids"""
        target, source = _scenario()
        out = merge(target, source, deterministic_options()).result
        new = out.markers[2]
        assert new.id.startswith("new-")
        assert new.label == "Stairs"
        photos = out.photos_for(new.id)
        assert [p.filename for p in photos] == ["IMG_9.jpg"]
        assert all(p.id.startswith("new-") for p in photos)
        assert set(new.photo_refs) == {p.id for p in photos}

    def test_inputs_unchanged(self):
        """Merging never mutates its inputs"""
        target, source = _scenario()
        before = (target, source)
        merge(target, source, deterministic_options())
        assert (target, source) == before
        assert target.markers[0].photo_refs == ("t1-p0", "t1-p1")

    def test_wrong_types(self):
        """Inputs must be record sets"""
        with pytest.raises(TypeError):
            merge([], RecordSet())
        with pytest.raises(TypeError):
            merge(RecordSet(), RecordSet(), options={"duplicate_strategy": "none"})

    def test_empty_source(self):
        """Nothing to add leaves the target as-is"""
        target, _ = _scenario()
        res = merge(target, RecordSet(), deterministic_options())
        assert res.result.markers == target.markers
        assert res.stats.new_markers == 0


class TestMergeOptions:
    """Strategy and photo handling"""

    def test_none_adds_everything(self):
        """Strategy none treats every source marker as new"""
        target, source = _scenario()
        res = merge(target, source, deterministic_options(duplicate_strategy="none"))
        assert res.stats.new_markers == 2
        assert res.stats.duplicate_markers == 0
        assert len(res.result.markers) == 4

    def test_keep_both(self):
        """keep-both carries colliding photos too"""
        target, source = _scenario()
        res = merge(target, source, deterministic_options(duplicate_photo_strategy="keep-both"))
        assert res.stats.duplicate_photos == 1
        assert res.stats.new_photos == 3
        names = [p.filename for p in res.result.photos_for("t1")]
        assert names.count("img_1.JPG") == 1

    def test_one_to_one(self):
        """A consumed target is not matched twice"""
        target = records([mk("t1", 100, 100)])
        source = records([mk("s1", 101, 100), mk("s2", 99, 100)])
        res = merge(target, source, deterministic_options(coordinate_tolerance=5))
        assert res.stats.duplicate_markers == 1
        assert res.stats.new_markers == 1
        assert res.decisions[0].target_index == 0
        assert res.decisions[1].target_index is None

    def test_tolerance_changes_outcome(self):
        """(102, 101) vs (100, 100): duplicate at 5 px, new at 2 px"""
        target = records([mk("t1", 100, 100)])
        source = records([mk("s1", 102, 101)])
        assert statistics(target, source, deterministic_options(coordinate_tolerance=5)).duplicate_markers == 1
        assert statistics(target, source, deterministic_options(coordinate_tolerance=2)).new_markers == 1

    def test_label_strategy_stats(self):
        """matched_by reports the deciding rule"""
        target, source = _scenario()
        st = statistics(target, source, deterministic_options(duplicate_strategy="smart"))
        assert st.matched_by == {"label": 1}


class TestTimestamps:
    """Merge time vs preserved timestamps"""

    def test_merge_time_applied(self):
        """Default: new records and touched targets take the merge time"""
        target, source = _scenario()
        out = merge(target, source, deterministic_options()).result
        assert out.markers[0].modified_at == FIXED_NOW
        assert out.markers[1].modified_at == target.markers[1].modified_at
        assert out.markers[2].created_at == FIXED_NOW
        assert all(p.created_at == FIXED_NOW for p in out.photos[2:])

    def test_preserve(self):
        """preserve_timestamps keeps the originals"""
        target, source = _scenario()
        out = merge(target, source, deterministic_options(preserve_timestamps=True)).result
        assert out.markers[0].modified_at == target.markers[0].modified_at
        assert out.markers[2].created_at == source.markers[1].created_at


class TestStatisticsConsistency:
    """statistics() predicts merge() exactly"""

    @pytest.mark.parametrize("strategy", [s.value for s in DuplicateStrategy])
    def test_same_counts(self, strategy):
        """Same inputs, same counts, for every strategy"""
        target, source = _scenario()
        opts = deterministic_options(duplicate_strategy=strategy, photo_match_threshold=0.5)
        assert statistics(target, source, opts) == merge(target, source, opts).stats

    def test_classify_shared(self):
        """Decisions match the merge decisions"""
        target, source = _scenario()
        opts = deterministic_options()
        assert tuple(classify(target, source, opts)) == merge(target, source, opts).decisions


class TestDeterminism:
    """Same inputs and generators, same output"""

    def test_repeatable(self):
        """Two runs with fresh identical generators are equal"""
        target, source = _scenario()
        a = merge(target, source, deterministic_options(duplicate_strategy="smart"))
        b = merge(target, source, deterministic_options(duplicate_strategy="smart"))
        assert a.result == b.result
        assert a.stats == b.stats

    def test_photo_without_filename(self):
        """Unnamed photos never collide"""
        t = mk("t1", 0, 0, refs=["tp"])
        target = records([t], [ph("tp", "t1", "")])
        s = mk("s1", 1, 1, refs=["sp"])
        source = records([s], [ph("sp", "s1", "")])
        res = merge(target, source, deterministic_options())
        assert res.stats.duplicate_photos == 0
        assert res.stats.new_photos == 1
