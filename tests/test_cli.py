from rest_raster import cli


def test_sources_command_lists_catalog(capsys):
    exit_code = cli.main(["sources", "--source", "USGS"])

    out = capsys.readouterr().out.strip().splitlines()
    assert exit_code == 0
    assert out
    assert all(line.startswith("USGS\t") for line in out)


def test_sources_command_reports_unknown_source(capsys):
    assert cli.main(["sources", "--source", "Nowhere"]) == 1
    assert "Nowhere" in capsys.readouterr().err


def test_fetch_without_run_prints_queries(capsys):
    exit_code = cli.main(
        [
            "fetch",
            "--url",
            "https://svc.example.test/arcgis/rest/services/Ortho/MapServer/",
            "--service-epsg",
            "EPSG:3857",
            "--bbox",
            "0",
            "0",
            "100",
            "50",
            "--bbox",
            "0",
            "0",
            "50",
            "100",
        ]
    )

    lines = capsys.readouterr().out.strip().splitlines()
    assert exit_code == 0
    assert len(lines) == 2
    assert lines[0].split("\t")[1] == "not_run"
    assert "size=1024%2C512" in lines[0]
    assert "size=512%2C1024" in lines[1]


def test_fetch_rejects_bad_spatial_reference(capsys):
    exit_code = cli.main(
        ["fetch", "--url", "https://svc.example.test/x/", "--service-epsg", "WGS84", "--bbox", "0", "0", "1", "1"]
    )

    assert exit_code == 2
    assert "Invalid spatial reference" in capsys.readouterr().err
