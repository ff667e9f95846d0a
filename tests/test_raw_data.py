import pytest

from hcspipe.db import api as db_api
from hcspipe.errors import SchemaMismatch, UnresolvedReference
from hcspipe.importers.annotations import load_annotations
from hcspipe.importers.raw_data import load_level0, load_raw_data, mask_wells, prepare_for_load


@pytest.fixture
def registered(pctx, plate_rows, assay_rows):
    return load_annotations(pctx.db, plate_rows, assay_rows)


def test_prepare_resolves_wells_and_channels(pctx, registered, raw_rows):
    records = prepare_for_load(pctx.db, registered, raw_rows)

    assert len(records) == len(raw_rows)
    wells = db_api.fetch_wells_frame(pctx.db, registered).set_index(["rowi", "coli"])
    comps = db_api.fetch_components_frame(pctx.db, registered).set_index("machine_name")

    a02 = records[(records["channel"] == "nuc_count") & (records["rowi"] == 1) & (records["coli"] == 2)].iloc[0]
    assert a02["waid"] == wells.loc[(1, 2), "waid"]
    assert a02["acid"] == comps.loc["nuc_count", "acid"]
    assert a02["aeid"] == comps.loc["nuc_count", "aeid"]
    assert a02["rval"] == pytest.approx(11.0)
    assert a02["wllq"] == 1


def test_prepare_accepts_row_and_column_positions(pctx, registered):
    records = prepare_for_load(
        pctx.db, registered, [{"plate": "PL01", "row": 2, "col": 3, "machine_name": "nuc_count", "value": "4.5"}]
    )
    assert records.iloc[0][["rowi", "coli"]].tolist() == [2, 3]
    assert records.iloc[0]["rval"] == pytest.approx(4.5)


def test_prepare_copies_well_quality(pctx, registered, plate_rows, assay_rows):
    flagged = [dict(row, wllq=0) if row["well"] == "B02" else row for row in plate_rows]
    load_annotations(pctx.db, flagged, assay_rows, prior_asid=registered)

    records = prepare_for_load(pctx.db, registered, [{"apid": "PL01", "well": "B02", "channel": "nuc_count", "rval": 3}])
    assert records.iloc[0]["wllq"] == 0


@pytest.mark.parametrize(
    "row, fragment",
    [
        ({"apid": "PL99", "well": "A01", "channel": "nuc_count", "rval": 1.0}, "PL99"),
        ({"apid": "PL01", "well": "H12", "channel": "nuc_count", "rval": 1.0}, "matched 0 wells"),
        ({"apid": "PL01", "well": "A01", "channel": "unknown_ch", "rval": 1.0}, "unknown_ch"),
    ],
)
def test_prepare_rejects_unmatched_rows(pctx, registered, row, fragment):
    with pytest.raises(UnresolvedReference, match=fragment):
        prepare_for_load(pctx.db, registered, [row])


def test_prepare_rejects_duplicate_measurements(pctx, registered):
    rows = [
        {"apid": "PL01", "well": "A01", "channel": "nuc_count", "rval": 1.0},
        {"apid": "PL01", "well": "A01", "channel": "nuc_count", "rval": 2.0},
    ]
    with pytest.raises(UnresolvedReference, match="duplicates row 1"):
        prepare_for_load(pctx.db, registered, rows)


def test_prepare_rejects_channel_from_another_category(pctx):
    plate = [
        {"asnm": "S", "asph": "P1", "apid": "PL01", "well": "A01", "wllt": "n", "ecat": "cyto"},
        {"asnm": "S", "asph": "P1", "apid": "PL02", "well": "A01", "wllt": "n", "ecat": "geno"},
    ]
    assay = [
        {"ecat": "cyto", "aenm": "NucCount", "channel": "nuc_count"},
        {"ecat": "geno", "aenm": "DnaDamage", "channel": "h2ax"},
    ]
    asid = load_annotations(pctx.db, plate, assay)
    with pytest.raises(UnresolvedReference, match="h2ax"):
        prepare_for_load(pctx.db, asid, [{"apid": "PL01", "well": "A01", "channel": "h2ax", "rval": 1.0}])


def test_prepare_rejects_non_numeric_values_and_unknown_study(pctx, registered):
    with pytest.raises(SchemaMismatch):
        prepare_for_load(pctx.db, registered, [{"apid": "PL01", "well": "A01", "channel": "nuc_count", "rval": "n/a"}])
    with pytest.raises(UnresolvedReference):
        prepare_for_load(pctx.db, registered + 1, [{"apid": "PL01", "well": "A01", "channel": "nuc_count", "rval": 1}])


def test_reloading_raw_data_replaces_values(pctx, registered, raw_rows):
    assert load_raw_data(pctx.db, registered, raw_rows) == len(raw_rows)
    changed = [dict(row, rval=row["rval"] + 1) for row in raw_rows]
    load_raw_data(pctx.db, registered, changed)

    count = pctx.db.execute("SELECT COUNT(*) FROM lvl0").fetchone()[0]
    assert count == len(raw_rows)
    a01 = pctx.db.execute(
        """
        SELECT l.rval FROM lvl0 l
        JOIN wells w ON w.waid = l.waid
        JOIN assay_components c ON c.acid = l.acid
        WHERE w.rowi = 1 AND w.coli = 1 AND c.machine_name = 'nuc_count'
        """
    ).fetchone()[0]
    assert a01 == pytest.approx(11.0)


def test_load_level0_rejects_wells_of_another_study(pctx, registered, plate_rows, assay_rows, raw_rows):
    other = load_annotations(pctx.db, [dict(r, asph="P2") for r in plate_rows], assay_rows)
    records = prepare_for_load(pctx.db, registered, raw_rows)
    with pytest.raises(UnresolvedReference):
        load_level0(pctx.db, other, records)


def test_mask_wells_keeps_level0_rows(pctx, study):
    updated = mask_wells(pctx.db, study, apid="PL01", positions=["A03"])
    assert updated == 1

    wells = db_api.fetch_wells_frame(pctx.db, study)
    a03 = wells[(wells["rowi"] == 1) & (wells["coli"] == 3)].iloc[0]
    assert a03["wllq"] == 0

    rows = pctx.db.execute("SELECT wllq FROM lvl0 WHERE waid = ?", (int(a03["waid"]),)).fetchall()
    assert [r["wllq"] for r in rows] == [0]

    mask_wells(pctx.db, study, waids=[int(a03["waid"])], wllq=1)
    wells = db_api.fetch_wells_frame(pctx.db, study)
    assert (wells["wllq"] == 1).all()


def test_mask_wells_rejects_unknown_targets(pctx, study):
    with pytest.raises(UnresolvedReference):
        mask_wells(pctx.db, study, apid="PL99")
    with pytest.raises(UnresolvedReference):
        mask_wells(pctx.db, study, apid="PL01", positions=["P24"])
    with pytest.raises(UnresolvedReference):
        mask_wells(pctx.db, study, waids=[99999])
