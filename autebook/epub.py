"""EPUB container primitives shared by the inspector and the assembler."""

from __future__ import annotations

import posixpath
import shutil
import zipfile
from pathlib import PurePosixPath
from typing import Optional

from lxml import etree

MIMETYPE = b"application/epub+zip"
CONTAINER_PATH = "META-INF/container.xml"

CONTAINER_NS = "urn:oasis:names:tc:opendocument:xmlns:container"
OPF_NS = "http://www.idpf.org/2007/opf"
DC_NS = "http://purl.org/dc/elements/1.1/"

XHTML_MEDIA_TYPE = "application/xhtml+xml"
NCX_MEDIA_TYPE = "application/x-dtbncx+xml"
CSS_MEDIA_TYPE = "text/css"


def xml_parser() -> etree.XMLParser:
    return etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=False)


def parse_xml(raw: bytes) -> etree._Element:
    return etree.fromstring(raw, parser=xml_parser())


def local_name(tag: object) -> str:
    if not tag or not isinstance(tag, str):
        return ""
    if "}" in tag:
        return tag.split("}", 1)[1]
    return tag


def child_by_local_name(node: etree._Element, name: str) -> Optional[etree._Element]:
    for child in node:
        if local_name(child.tag) == name:
            return child
    return None


def children_by_local_name(node: etree._Element, name: str) -> list[etree._Element]:
    return [child for child in node if local_name(child.tag) == name]


def node_text(node: Optional[etree._Element]) -> str:
    if node is None:
        return ""
    return "".join(node.itertext()).strip()


def canonical_member(name: str) -> str:
    normalized = posixpath.normpath((name or "").replace("\\", "/")).lstrip("/")
    while normalized.startswith("../"):
        normalized = normalized[3:]
    return "" if normalized in {"", "."} else normalized


def resolve_href(from_member: str, href: str) -> str:
    """Zip member an *href* found in *from_member* points at (fragment dropped)."""
    raw = (href or "").split("#", 1)[0].strip()
    if not raw:
        return ""
    base = PurePosixPath(from_member).parent.as_posix()
    if base in {"", "."}:
        return canonical_member(raw)
    return canonical_member(posixpath.join(base, raw))


def relative_href(from_member: str, to_member: str) -> str:
    from_dir = PurePosixPath(from_member).parent.as_posix()
    start = from_dir if from_dir not in {"", "."} else "."
    return posixpath.relpath(to_member, start=start)


def opf_path_from_container(raw: bytes) -> str:
    root = parse_xml(raw)
    rootfile = root.find(f".//{{{CONTAINER_NS}}}rootfile")
    full_path = (rootfile.get("full-path") or "").strip() if rootfile is not None else ""
    if not full_path:
        for node in root.iter():
            if local_name(node.tag) == "rootfile" and (node.get("full-path") or "").strip():
                full_path = node.get("full-path").strip()
                break
    return canonical_member(full_path)


def container_xml(opf_path: str) -> bytes:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        f'<container version="1.0" xmlns="{CONTAINER_NS}">\n'
        "  <rootfiles>\n"
        f'    <rootfile full-path="{opf_path}" media-type="application/oebps-package+xml"/>\n'
        "  </rootfiles>\n"
        "</container>\n"
    ).encode("utf-8")


def clone_zip_info(info: zipfile.ZipInfo, *, filename: Optional[str] = None) -> zipfile.ZipInfo:
    cloned = zipfile.ZipInfo(filename or info.filename, date_time=info.date_time)
    cloned.compress_type = info.compress_type
    cloned.comment = info.comment
    cloned.extra = info.extra
    cloned.internal_attr = info.internal_attr
    cloned.external_attr = info.external_attr
    cloned.create_system = info.create_system
    cloned.create_version = info.create_version
    cloned.extract_version = info.extract_version
    cloned.flag_bits = info.flag_bits
    return cloned


def copy_zip_member(
    src: zipfile.ZipFile,
    dst: zipfile.ZipFile,
    info: zipfile.ZipInfo,
    chunk_size: int = 1024 * 1024,
) -> None:
    """Copy one member keeping its bytes, timestamp and compression."""
    zinfo = clone_zip_info(info)
    with src.open(info.filename, "r") as src_stream:
        with dst.open(zinfo, "w") as dst_stream:
            shutil.copyfileobj(src_stream, dst_stream, chunk_size)
