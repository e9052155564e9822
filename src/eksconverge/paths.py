from __future__ import annotations

import os
import pathlib


class Paths:
    @property
    def cache(self) -> pathlib.Path:
        """Directory holding generated kubeconfig files.

        Set via EKSCONVERGE_CACHE; otherwise follows XDG_CACHE_HOME.
        """
        if "EKSCONVERGE_CACHE" in os.environ:
            return pathlib.Path(os.environ["EKSCONVERGE_CACHE"])

        if "XDG_CACHE_HOME" in os.environ:
            return pathlib.Path(os.environ["XDG_CACHE_HOME"]) / "eksconverge"

        return pathlib.Path.home() / ".cache" / "eksconverge"

    @property
    def kubeconfigs(self) -> pathlib.Path:
        return self.cache / "kubeconfig"

    def kubeconfig(self, region: str, cluster_name: str) -> pathlib.Path:
        return self.kubeconfigs / f"{region}-{cluster_name}.yaml"
