from pathlib import Path
from typing import List, Mapping, Optional

from modbump.infrastructure.process import run_command

GO_MOD_FILENAME = "go.mod"
GO_SUM_FILENAME = "go.sum"

# Prints module:current:available for direct dependencies that have a newer version.
# Every other module prints an empty line.
LIST_UPDATES_TEMPLATE = (
    "{{if (and (not (or .Main .Indirect)) .Update)}}"
    "{{.Path}}:{{.Version}}:{{.Update.Version}}"
    "{{end}}"
)


class GoModRunner:
    """
    Lists and applies Go module updates with the go toolchain.
    """

    def __init__(self, go_binary: str = "go", env: Optional[Mapping[str, str]] = None):
        self.go_binary = go_binary
        self.env = env

    async def is_module(self, working_dir: Path) -> bool:
        return (working_dir / GO_MOD_FILENAME).is_file() and (working_dir / GO_SUM_FILENAME).is_file()

    async def list_candidate_updates(self, working_dir: Path) -> List[str]:
        output = await run_command(
            [self.go_binary, "list", "-u", "-f", LIST_UPDATES_TEMPLATE, "-m", "all"],
            cwd=working_dir,
            env=self.env,
        )
        return [line.strip() for line in output.splitlines() if line.strip()]

    async def apply_update(self, working_dir: Path, module: str, version: str) -> None:
        await run_command([self.go_binary, "get", f"{module}@{version}"], cwd=working_dir, env=self.env)

    async def reconcile(self, working_dir: Path) -> None:
        await run_command([self.go_binary, "mod", "tidy"], cwd=working_dir, env=self.env)
