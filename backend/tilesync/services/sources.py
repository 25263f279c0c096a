"""Tile source definitions and layer classification tables.

A ``TileSource`` describes one upstream vector tile dataset: where its
tiles live, which of its layers are trusted (anything not listed is
skipped by the decoder), how a feature's dedup key is resolved, and which
PostGIS table each geometry family lands in.

Two sources are published by the Nagoya city map service:

- ``designated_roads``: designated road lines and road areas.
- ``building_zones``: building regulation zones (all polygons).
"""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING, Literal

from tilesync.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Mapping

    from tilesync.core import config

SqlType = Literal["TEXT", "INTEGER"]


class UnknownSourceError(KeyError):
    """Raised when a tile source name is not configured."""


@dataclasses.dataclass(frozen=True)
class Column:
    """A feature attribute promoted to its own table column."""

    name: str
    sql_type: SqlType = "TEXT"


@dataclasses.dataclass(frozen=True)
class FeatureTable:
    """Storage layout for one geometry family of a source.

    Attributes:
        name: PostGIS table name.
        kind: Geometry family stored in the table.
        id_prefix: Prefix for generated record ids.
        columns: Attributes promoted to typed columns; everything else is
            kept only in ``raw_props``.
        document_column: Column whose value is a file name to be resolved
            against the source's ``document_base_url``.
    """

    name: str
    kind: db_models.LayerKind
    id_prefix: str
    columns: tuple[Column, ...] = ()
    document_column: str | None = None

    @property
    def geometry_type(self) -> db_models.GeometryType:
        return db_models.GEOMETRY_TYPES[self.kind]


@dataclasses.dataclass(frozen=True)
class TileSource:
    """One upstream vector tile dataset and how to materialize it."""

    name: str
    base_url: str
    run_prefix: str
    layers: Mapping[str, db_models.LayerClassification]
    key_fields: tuple[str, ...]
    tables: Mapping[db_models.LayerKind, FeatureTable]
    document_base_url: str | None = None

    def table_for(self, kind: db_models.LayerKind) -> FeatureTable:
        try:
            return self.tables[kind]
        except KeyError:
            raise UnknownSourceError(
                f"{self.name} has no {kind} table"
            ) from None


def _line(category: str) -> db_models.LayerClassification:
    return db_models.LayerClassification("line", category)


def _polygon(category: str) -> db_models.LayerClassification:
    return db_models.LayerClassification("polygon", category)


ROAD_LAYERS: dict[str, db_models.LayerClassification] = {
    "shiteidouro_2gou_pl_web": _line("2号道路"),
    "shiteidouro_5gou_pl_web": _line("5号道路"),
    "shiteidouro_2kou_kobetsu_pl": _line("2項道路(個別)"),
    "shiteidouro_2kou_kenchikusen_pl": _line("2項道路(建築線)"),
    "shiteidouro_3gou_kobetsu_pl": _line("3号道路(個別)"),
    "shiteidouro_3gou_syuji_pl": _line("3号道路(周知)"),
    "shiteidouro_tokuteitsuuro_2gou_pl": _line("特定通路(2号)"),
    "shiteidouro_tokuteitsuuro_3gou_pl": _line("特定通路(3号)"),
    "shiteidouro_1gou_pg": _polygon("1号道路"),
    "shiteidouro_2kou_pg": _polygon("2項道路"),
    "shiteidouro_3gou_syuji_pg": _polygon("3号道路(周知)"),
    "shiteidouro_kukakuseiri_pg": _polygon("土地区画整理"),
    "shiteidouro_kairyouku_pg": _polygon("改良区"),
}

BUILDING_LAYERS: dict[str, db_models.LayerClassification] = {
    "danchinintei_pg": _polygon("団地認定"),
    "kenchiku_mokuzo_pg": _polygon("木造住宅密集地域"),
    "kenchikukyoutei_pg": _polygon("建築協定"),
    "machinamihozon_pg": _polygon("町並み保存"),
    "rinkaibubousai_dai1_syu_pg": _polygon("臨海部防災区域(第1種)"),
    "rinkaibubousai_dai2_syu_pg": _polygon("臨海部防災区域(第2種)"),
    "rinkaibubousai_dai3_syu_pg": _polygon("臨海部防災区域(第3種)"),
    "rinkaibubousai_dai4_syu_pg": _polygon("臨海部防災区域(第4種)"),
    "toshikeikan_keisei_pg": _polygon("都市景観形成地区"),
    "toshikeikan_kyoutei_pg": _polygon("都市景観協定"),
    "takuchizousei_koujikisei_pg": _polygon("宅地造成工事規制区域"),
    "tochikukakuseirijigyo_koukyou_pg": _polygon("土地区画整理事業(公共)"),
    "tochikukakuseirijigyo_kumiai_pg": _polygon("土地区画整理事業(組合)"),
}

ROAD_KEY_FIELDS = ("keycode", "daicyo_ban", "gid")
BUILDING_KEY_FIELDS = ("keycode", "gid")

DESIGNATED_ROADS_TABLE = FeatureTable(
    name="designated_roads",
    kind="line",
    id_prefix="NDR",
    columns=(
        Column("keycode"),
        Column("daicyo_ban"),
        Column("gid", "INTEGER"),
        Column("encyo"),
        Column("fukuin"),
        Column("kyoka_ban"),
        Column("kyoka_ymd"),
        Column("shitei_ban"),
        Column("shitei_ymd"),
        Column("filename"),
    ),
    document_column="filename",
)

DESIGNATED_AREAS_TABLE = FeatureTable(
    name="designated_areas",
    kind="polygon",
    id_prefix="NDA",
    columns=(Column("gid", "INTEGER"), Column("keycode")),
)

BUILDING_ZONES_TABLE = FeatureTable(
    name="building_zones",
    kind="polygon",
    id_prefix="NBZ",
    columns=(
        Column("gid", "INTEGER"),
        Column("keycode"),
        Column("name"),
        Column("kyotei_name"),
        Column("kubun"),
        Column("nintei_ymd"),
        Column("nintei_no"),
        Column("shitei_ymd"),
        Column("kokoku_ymd"),
        Column("menseki"),
    ),
)

ALL_TABLES: tuple[FeatureTable, ...] = (
    DESIGNATED_ROADS_TABLE,
    DESIGNATED_AREAS_TABLE,
    BUILDING_ZONES_TABLE,
)


def build_sources(settings: config.Settings) -> dict[str, TileSource]:
    """Create the configured tile sources keyed by name.

    Args:
        settings: Application settings providing upstream URLs.

    Returns:
        Mapping of source name to ``TileSource``.
    """
    roads = TileSource(
        name="designated_roads",
        base_url=settings.roads_tile_url,
        run_prefix="NSL",
        layers=ROAD_LAYERS,
        key_fields=ROAD_KEY_FIELDS,
        tables={
            "line": DESIGNATED_ROADS_TABLE,
            "polygon": DESIGNATED_AREAS_TABLE,
        },
        document_base_url=settings.document_base_url,
    )
    buildings = TileSource(
        name="building_zones",
        base_url=settings.buildings_tile_url,
        run_prefix="NBL",
        layers=BUILDING_LAYERS,
        key_fields=BUILDING_KEY_FIELDS,
        tables={"polygon": BUILDING_ZONES_TABLE},
    )
    return {source.name: source for source in (roads, buildings)}


def get_source(
    sources: Mapping[str, TileSource], name: str
) -> TileSource:
    """Look up a source by name.

    Raises:
        UnknownSourceError: If no source with that name is configured.
    """
    try:
        return sources[name]
    except KeyError:
        raise UnknownSourceError(name) from None
