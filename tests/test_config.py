from market_ingest.config import Settings


def test_backfill_windows_are_sorted_unique_and_positive(tmp_path):
    config = Settings(data_dir=tmp_path, backfill_windows_raw="365, 30,90,30,0,-5")
    assert config.backfill_windows == (30, 90, 365)


def test_markers_are_upper_cased(tmp_path):
    config = Settings(data_dir=tmp_path, canonical_index_markers_raw="case30, egx30 ,")
    assert config.canonical_index_markers == ("CASE30", "EGX30")


def test_empty_values_parse_to_empty_tuples(tmp_path):
    config = Settings(data_dir=tmp_path, backfill_windows_raw="", canonical_index_markers_raw=None)
    assert config.backfill_windows == ()
    assert config.canonical_index_markers == ()


def test_ensure_paths_creates_export_dir(tmp_path):
    config = Settings(data_dir=tmp_path / "nested" / "data")
    config.ensure_paths()
    assert (tmp_path / "nested" / "data" / "export").is_dir()
