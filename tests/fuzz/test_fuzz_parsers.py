import random
import string
import pytest
from envprov.errors import ValidationError
from envprov.PARSERS.dockerfile_parser import DockerfileParser
from envprov.PARSERS.manifest_parser import ManifestParser
from envprov.PARSERS.recipe_parser import RecipeParser

def random_string(length):
    return ''.join(random.choice(string.printable) for _ in range(length))

def random_recipe():
    words = ["FROM", "WORKDIR", "RUN", "CMD", "COPY", "apt-get", "update", "install", "-y",
             "--no-install-recommends", "&&", "rm", "-rf", "/var/lib/apt/lists/*", "gcc", "\\\n",
             "[", "]", '"', "\n", "#", "AS", "make"]
    return " ".join(random.choice(words) for _ in range(random.randint(0, 40)))

def test_fuzz_dockerfile_parser():
    parser = DockerfileParser()
    for _ in range(100):
        content = random_string(random.randint(0, 1000))
        # Tokenizing never fails, whatever the input
        parser.parse_from_string(content)

def test_fuzz_recipe_parser():
    parser = RecipeParser()
    for _ in range(200):
        content = random.choice([random_string(random.randint(0, 500)), random_recipe()])
        try:
            parser.parse_from_string(content)
        except ValidationError:
            # Malformed recipes must only ever be reported as validation errors
            pass

def test_fuzz_manifest_parser():
    parser = ManifestParser()
    for _ in range(100):
        content = random_string(random.randint(0, 1000))
        try:
            parser.parse_from_string(content)
        except ValidationError:
            pass

def test_edge_cases_parsers():
    dockerfile_parser = DockerfileParser()
    recipe_parser = RecipeParser()

    # Empty string
    assert dockerfile_parser.parse_from_string("") == []

    # Only whitespace
    assert dockerfile_parser.parse_from_string("   \n\t  ") == []

    # Very long line
    dockerfile_parser.parse_from_string("RUN " + "a" * 10000)

    # Many line continuations
    assert len(dockerfile_parser.parse_from_string("RUN echo \\\n" * 100 + "hello")) == 1

    # Dangling continuation at end of file
    assert len(dockerfile_parser.parse_from_string("FROM gcc \\")) == 1

    with pytest.raises(ValidationError):
        recipe_parser.parse_from_string("FROM gcc\nCMD []")

def test_fuzz_binary_files(tmp_path):
    recipe_parser = RecipeParser()
    manifest_parser = ManifestParser()
    path = tmp_path / "input"
    for content in [b"\xff", b"FROM gcc\n\xc3\x28\nCMD gcc\n", bytes(random.randrange(256) for _ in range(200))]:
        path.write_bytes(content)
        for parse in (recipe_parser.parse, manifest_parser.parse):
            try:
                parse(str(path))
            except ValidationError:
                pass
