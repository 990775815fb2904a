from client.id_map import OptimisticIdMap


def test_lookups_in_both_directions():
    ids = OptimisticIdMap()
    ids.set("real-1", "tmp-1")

    assert ids.get_real("tmp-1") == "real-1"
    assert ids.get_optimistic("real-1") == "tmp-1"
    assert ids.resolve("tmp-1") == "real-1"
    assert ids.resolve("real-1") == "real-1"
    assert ids.resolve("unmapped") == "unmapped"


def test_clear_removes_both_directions():
    ids = OptimisticIdMap()
    ids.set("real-1", "tmp-1")
    ids.clear("real-1")

    assert ids.get_real("tmp-1") is None
    assert ids.get_optimistic("real-1") is None
    assert len(ids) == 0


def test_remapping_an_optimistic_id_drops_the_stale_entry():
    ids = OptimisticIdMap()
    ids.set("real-1", "tmp-1")
    ids.set("real-2", "tmp-1")

    assert ids.get_real("tmp-1") == "real-2"
    assert ids.get_optimistic("real-1") is None
    assert len(ids) == 1
