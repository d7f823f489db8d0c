import json
from pathlib import Path

import pandas as pd
import pytest

from aqmesh.io.gridstore import load_grid
from aqmesh.run import main

pytestmark = pytest.mark.integration


def test_grid_command_saves_grid(config_path: Path, config) -> None:
    main(["grid", "--config", str(config_path)])
    saved = load_grid(config.variable_grid_data)
    assert saved.arena.layer_counts() == [28, 28, 16]
    assert saved.meta["cells_per_layer"] == [28, 28, 16]


def test_steady_command_with_overrides(config_path: Path, config, tmp_path: Path) -> None:
    overrides = tmp_path / "overrides.txt"
    overrides.write_text("# shorter run\nio.output_file=cli.parquet\n")
    main(
        [
            "steady",
            "--config",
            str(config_path),
            "--overrides-file",
            str(overrides),
            "--override",
            "numerics.num_iterations=3",
        ]
    )
    out = Path(config.io.outdir) / "cli.parquet"
    assert len(pd.read_parquet(out)) == 28
    summary = json.loads(out.with_name("cli_summary.json").read_text())
    assert summary["iterations"] == 3


def test_missing_subcommand_exits(config_path: Path) -> None:
    with pytest.raises(SystemExit):
        main(["--config", str(config_path)])
