import pytest

from porter.errors import InputError
from porter.oci.platform import Platform, current_platform, platform_matches


@pytest.mark.parametrize(
    "value,expected",
    [
        ("linux/amd64", Platform(os="linux", architecture="amd64")),
        ("linux/arm64/v8", Platform(os="linux", architecture="arm64", variant="v8")),
        ("Windows/AMD64", Platform(os="windows", architecture="amd64")),
        ("linux", Platform(os="linux")),
        ("windows/amd64:10.0.17763", Platform(os="windows", architecture="amd64")),
        ("noarch", Platform(os="noarch")),
    ],
)
def test_parse(value, expected):
    assert Platform.parse(value) == expected


@pytest.mark.parametrize(
    "platform,expected",
    [
        (Platform(os="linux", architecture="amd64"), "linux/amd64"),
        (Platform(os="linux", architecture="arm", variant="v7"), "linux/arm/v7"),
        (Platform(os="noarch"), "noarch"),
    ],
)
def test_str(platform, expected):
    assert str(platform) == expected


def test_platform_is_a_key():
    """Equal platforms map onto the same entry, regardless of case"""
    artifacts = {Platform.parse("linux/amd64"): "a"}
    artifacts[Platform(os="LINUX", architecture="AMD64")] = "b"
    assert artifacts == {Platform(os="linux", architecture="amd64"): "b"}


def test_empty_variant_is_none():
    assert Platform(os="linux", architecture="arm64", variant="").variant is None


@pytest.mark.parametrize("value", ["", "   ", "linux", "linux/", "/amd64"])
def test_parse_selection_invalid(value):
    with pytest.raises(InputError):
        Platform.parse_selection(value)


def test_parse_selection():
    assert Platform.parse_selection(" linux/arm/v7 ") == Platform(
        os="linux", architecture="arm", variant="v7"
    )


@pytest.mark.parametrize(
    "platform,targets,expected",
    [
        (Platform.parse("linux/amd64"), [], True),
        (None, [], True),
        (None, [Platform.parse("linux/amd64")], True),
        (None, [Platform.parse("linux/amd64"), Platform.parse("linux/arm64")], False),
        (Platform.parse("linux/arm64/v8"), [Platform.parse("linux/arm64")], True),
        (Platform.parse("linux/arm64"), [Platform.parse("linux/arm64/v8")], False),
        (Platform.parse("linux/arm64/v8"), [Platform.parse("linux/arm64/v8")], True),
        (Platform.parse("darwin/amd64"), [Platform.parse("linux/amd64")], False),
        (
            Platform.parse("darwin/amd64"),
            [Platform.parse("linux/amd64"), Platform.parse("DARWIN/amd64")],
            True,
        ),
    ],
)
def test_platform_matches(platform, targets, expected):
    assert platform_matches(platform, targets) is expected


def test_current_platform(monkeypatch):
    monkeypatch.setattr("platform.system", lambda: "Linux")
    monkeypatch.setattr("platform.machine", lambda: "x86_64")
    assert current_platform() == Platform(os="linux", architecture="amd64")
