"""Tests for amidakuji.session."""

from amidakuji.ladder import Rung
from amidakuji.session import Phase, SessionSnapshot, SessionState


def test_initial_state():
    s = SessionState()
    assert s.rungs == ()
    assert s.phase is Phase.DRAWING
    assert s.version == 0


def test_append_while_drawing():
    s = SessionState()
    assert s.append(Rung(0, 1, 100, id="a"))
    assert s.append(Rung(2, 3, 100, id="b"))
    assert [r.id for r in s.rungs] == ["a", "b"]
    assert s.version == 2


def test_append_refused_once_results_showing():
    s = SessionState()
    s.append(Rung(0, 1, 100))
    assert s.finish()
    assert not s.append(Rung(2, 3, 200))
    assert len(s.rungs) == 1
    assert s.phase is Phase.SHOWING_RESULTS


def test_finish_is_one_way():
    s = SessionState()
    assert s.finish()
    version = s.version
    assert not s.finish()
    assert s.version == version
    assert s.phase is Phase.SHOWING_RESULTS


def test_reset_clears_rungs_and_phase_together():
    s = SessionState()
    s.append(Rung(0, 1, 100))
    s.finish()
    s.reset()
    snap = s.snapshot()
    assert snap.rungs == ()
    assert snap.phase is Phase.DRAWING


def test_reset_from_drawing_also_clears():
    s = SessionState()
    s.append(Rung(0, 1, 100))
    s.reset()
    assert s.rungs == ()
    assert s.phase is Phase.DRAWING
    assert s.version == 2


def test_snapshot_is_detached():
    s = SessionState()
    s.append(Rung(0, 1, 100, id="a"))
    snap = s.snapshot()
    s.append(Rung(2, 3, 100, id="b"))
    assert [r.id for r in snap.rungs] == ["a"]
    assert snap.version == 1


def test_rungs_property_is_not_a_live_list():
    s = SessionState()
    rungs = s.rungs
    assert isinstance(rungs, tuple)
    s.append(Rung(0, 1, 100))
    assert rungs == ()


def test_snapshot_dict_shape():
    snap = SessionSnapshot(rungs=(Rung(0, 1, 100.0, id="a"),), phase=Phase.SHOWING_RESULTS, version=3)
    assert snap.to_dict() == {
        "rungs": [{"id": "a", "railLeft": 0, "railRight": 1, "y": 100.0}],
        "phase": "showing-results",
        "version": 3,
    }
    assert SessionSnapshot.from_dict(snap.to_dict()) == snap


def test_from_dict_defaults():
    snap = SessionSnapshot.from_dict({})
    assert snap == SessionSnapshot()


def test_replace_adopts_snapshot():
    snap = SessionSnapshot(rungs=(Rung(0, 1, 100, id="a"),), phase=Phase.SHOWING_RESULTS, version=9)
    s = SessionState(snap)
    assert s.snapshot() == snap
    s.reset()
    assert s.version == 10
