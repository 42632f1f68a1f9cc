import allure
from click.testing import CliRunner

from queryloop import __version__
from queryloop.main import queryloop

pytestmark = [
    allure.epic("Query Loop"),
    allure.feature("CLI"),
]


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(queryloop, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
