import argparse
import time

import quote_core as core


def _bench_file(path: str, material: str, repeat: int) -> None:
    with open(path, "rb") as f:
        data = f.read()
    best_parse = best_total = float("inf")
    result = None
    for _ in range(max(1, repeat)):
        started = time.perf_counter()
        mesh = core.parse_stl_bytes(data)
        parsed = time.perf_counter()
        result = core.analyze_mesh(mesh, material)
        done = time.perf_counter()
        best_parse = min(best_parse, parsed - started)
        best_total = min(best_total, done - started)
    print(
        f"stl file={path} triangles={result.facet_count} "
        f"mesh_volume_mm3={result.mesh_volume_mm3:.3f} weight_g={result.weight_g:.3f} "
        f"parse_s={best_parse:.6f} total_s={best_total:.6f}"
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Benchmark parse + analysis for a binary STL file.")
    parser.add_argument("stl", nargs="+", help="Path(s) to binary STL files.")
    parser.add_argument("--material", default="pla", choices=sorted(core.MATERIALS))
    parser.add_argument("--repeat", type=int, default=3, help="Runs per file; best time is reported.")
    args = parser.parse_args()

    for path in args.stl:
        _bench_file(path, args.material, args.repeat)


if __name__ == "__main__":
    main()
