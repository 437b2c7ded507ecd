"""Tests for tool discovery on hosts."""

import pytest

from conftest import FakeShell, fail, ok
from modelhost.exceptions import ToolNotFoundError
from modelhost.services.discovery import ToolLocator


class TestToolLocator:
    """Test the lookup ladder and its cache."""

    @pytest.mark.asyncio
    async def test_found_on_path(self, shell):
        shell.on(r"^command -v conda$", ok("/usr/bin/conda\n"))

        path = await ToolLocator().locate("conda", "s1", shell)

        assert path == "/usr/bin/conda"
        assert shell.count("conda") == 1

    @pytest.mark.asyncio
    async def test_found_via_login_shell(self, shell):
        shell.on(r"bash -l -c 'which conda'", ok("/home/me/miniconda3/bin/conda\n"))

        assert await ToolLocator().locate("conda", "s1", shell) == "/home/me/miniconda3/bin/conda"

    @pytest.mark.asyncio
    async def test_found_by_sourcing_profile(self, shell):
        shell.on(r"source \"\$HOME/.bash_profile\".*which uv", ok("/home/me/.local/bin/uv\n"))

        assert await ToolLocator().locate("uv", "s1", shell) == "/home/me/.local/bin/uv"
        assert shell.ran(r"\.bashrc")

    @pytest.mark.asyncio
    async def test_found_in_conventional_location(self, shell):
        shell.on(r'^for p in .*"\$HOME/miniforge3/bin/conda"', ok("/home/me/miniforge3/bin/conda\n"))

        assert await ToolLocator().locate("conda", "s1", shell) == "/home/me/miniforge3/bin/conda"

    @pytest.mark.asyncio
    async def test_found_from_env_dirs(self, shell):
        shell.on(r"^for d in .*/\*/envs", ok("/opt/mamba/bin/conda\n"))

        assert await ToolLocator().locate("conda", "s1", shell) == "/opt/mamba/bin/conda"

    @pytest.mark.asyncio
    async def test_ignores_non_path_output(self, shell):
        shell.on(r"^command -v conda$", ok("conda: aliased to mamba\n"))

        assert await ToolLocator().locate("conda", "s1", shell) is None

    @pytest.mark.asyncio
    async def test_success_cached_per_host(self, shell):
        shell.on(r"^command -v uv$", ok("/usr/local/bin/uv\n"))
        locator = ToolLocator()

        await locator.locate("uv", "s1", shell)
        await locator.locate("uv", "s1", shell)
        assert shell.count(r"command -v uv") == 1

        await locator.locate("uv", "s2", shell)
        assert shell.count(r"command -v uv") == 2

        locator.clear("s1")
        await locator.locate("uv", "s1", shell)
        assert shell.count(r"command -v uv") == 3

    @pytest.mark.asyncio
    async def test_failure_not_cached(self, shell):
        locator = ToolLocator()
        assert await locator.locate("conda", "s1", shell) is None

        shell.on(r"^command -v conda$", ok("/usr/bin/conda\n"))
        assert await locator.locate("conda", "s1", shell) == "/usr/bin/conda"

    @pytest.mark.asyncio
    async def test_require_raises(self, shell):
        with pytest.raises(ToolNotFoundError) as exc_info:
            await ToolLocator().require("conda", "s1", shell)

        assert exc_info.value.tool == "conda"
        assert exc_info.value.host == "s1"

    @pytest.mark.asyncio
    async def test_unknown_tool_uses_path_and_profiles_only(self, shell):
        assert await ToolLocator().locate("sglang", "s1", shell) is None
        assert not shell.ran(r"^for ")
