from collections.abc import Callable
from importlib import resources
from pathlib import Path

from lxml import etree

from reportledger.errors import ConfigurationError, ConversionError
from reportledger.run_log import RunLog
from reportledger.schemas import ValidationError


CANONICAL_SCHEMA = "junit-10.xsd"


def read_resource(name: str) -> bytes:
    return resources.files("reportledger").joinpath("resources", name).read_bytes()


def _load_schema(name: str) -> etree.XMLSchema:
    return etree.XMLSchema(etree.XML(read_resource(name)))


def _validate(path: Path, schema_name: str | None) -> list[ValidationError]:
    try:
        document = etree.parse(str(path))
    except etree.XMLSyntaxError as exc:
        return [ValidationError(str(path), exc.lineno or 0, exc.msg)]
    except OSError as exc:
        return [ValidationError(str(path), 0, str(exc))]

    if schema_name is None:
        return []

    schema = _load_schema(schema_name)
    if schema.validate(document):
        return []
    return [ValidationError(str(path), entry.line, entry.message) for entry in schema.error_log]


class FormatConverter:
    """Turns one tool's report format into the canonical JUnit report.

    Subclasses name the tool (also the output subdirectory), the stylesheet
    doing the transform and, when the format has one, the input schema.
    """

    tool_name = ""
    stylesheet_resource: str | None = None
    input_schema: str | None = None
    output_schema = CANONICAL_SCHEMA

    def __init__(self, log: RunLog, stylesheet: str | None = None) -> None:
        self.log = log
        self.stylesheet = stylesheet
        self.input_validation_errors: list[ValidationError] = []
        self.output_validation_errors: list[ValidationError] = []

    def validate_input_file(self, path: Path) -> bool:
        self.input_validation_errors = _validate(path, self.input_schema)
        return not self.input_validation_errors

    def validate_output_file(self, path: Path) -> bool:
        self.output_validation_errors = _validate(path, self.output_schema)
        return not self.output_validation_errors

    def convert(self, input_path: Path, output_path: Path) -> None:
        try:
            transform = etree.XSLT(etree.XML(self._stylesheet_bytes()))
            result = transform(etree.parse(str(input_path)))
        except (etree.XSLTParseError, etree.XSLTApplyError, etree.XMLSyntaxError, OSError) as exc:
            raise ConversionError(f"conversion of '{input_path}' with '{self.tool_name}' failed: {exc}") from exc

        if result.getroot() is None:
            raise ConversionError(f"conversion of '{input_path}' with '{self.tool_name}' produced an empty document")

        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(bytes(result))

    def _stylesheet_bytes(self) -> bytes:
        if self.stylesheet is not None:
            return self.stylesheet.encode("utf-8")
        if self.stylesheet_resource is None:
            raise ConversionError(f"no stylesheet configured for '{self.tool_name}'")
        return read_resource(self.stylesheet_resource)


class JUnitConverter(FormatConverter):
    tool_name = "junit"
    stylesheet_resource = "junit.xsl"
    input_schema = CANONICAL_SCHEMA


class CppUnitConverter(FormatConverter):
    tool_name = "cppunit"
    stylesheet_resource = "cppunit.xsl"
    input_schema = "cppunit-1.0.xsd"


class CustomConverter(FormatConverter):
    # Input only has to be well-formed; the user stylesheet defines the rest.
    tool_name = "custom"


CONVERTERS: dict[str, Callable[..., FormatConverter]] = {
    JUnitConverter.tool_name: JUnitConverter,
    CppUnitConverter.tool_name: CppUnitConverter,
    CustomConverter.tool_name: CustomConverter,
}


def build_converter(format_name: str, log: RunLog, stylesheet: str | None = None) -> FormatConverter:
    factory = CONVERTERS.get(format_name)
    if factory is None:
        raise ConfigurationError(f"unknown report format: {format_name!r}")
    return factory(log, stylesheet=stylesheet)


def uses_builtin_stylesheet(format_name: str) -> bool:
    return format_name in CONVERTERS and format_name != CustomConverter.tool_name
