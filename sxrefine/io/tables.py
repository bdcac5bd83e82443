"""Tabular diagnostics for crystals and reflections."""

from __future__ import annotations

from typing import Sequence

import pandas as pd

from sxrefine.simulation.types import Crystal


def crystal_table(crystals: Sequence[Crystal]) -> pd.DataFrame:
    """One row per crystal with its refined parameters and flag."""

    rows = []
    for i, cr in enumerate(crystals):
        a, b, c, *_ = cr.cell.parameters()
        rows.append(
            {
                "crystal": i,
                "image": cr.image.filename,
                "a": a,
                "b": b,
                "c": c,
                "osf": cr.osf,
                "bfac": cr.bfac,
                "det_shift_x": cr.det_shift_x,
                "det_shift_y": cr.det_shift_y,
                "profile_radius": cr.profile_radius,
                "n_reflections": len(cr.reflections),
                "flag": cr.flag_reason,
                "notes": "; ".join(cr.notes),
            }
        )
    return pd.DataFrame(rows)


def reflection_table(crystal: Crystal) -> pd.DataFrame:
    """The reflection list of one crystal as a DataFrame."""

    columns = [
        "h", "k", "l", "panel", "fs", "ss", "peak_fs", "peak_ss", "exerr",
        "intensity", "sigma", "partiality", "lorentz", "redundancy", "free",
    ]
    df = pd.DataFrame(
        [[getattr(refl, col) for col in columns] for refl in crystal.reflections],
        columns=columns,
    )
    df["resolution"] = crystal.cell.resolutions(df[["h", "k", "l"]].to_numpy()) if len(df) else []
    return df
