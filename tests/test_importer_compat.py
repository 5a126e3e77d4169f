from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.exc import IntegrityError, OperationalError

from snapvault.core.errors import DatabaseConnectionLost
from snapvault.importer.compat import (
    ServerCapabilities,
    prepare_create_table,
    rewrite_set_names,
    strip_routine_definer,
    strip_trigger_definer,
    strip_view_definer,
)
from snapvault.importer.errors import DuplicateKeyError, classify_db_error
from snapvault.importer.generated import (
    GeneratedColumn,
    corrective_alters,
    insert_targets_generated,
    parse_generated_columns,
    to_insert_if_absent,
)
from snapvault.importer.hooks import RestoredTableContext, upload_path_fixup, usermeta_prefix_fixup

MYSQL = ServerCapabilities(
    dialect="mysql",
    engines={"innodb", "myisam"},
    charsets={"utf8", "utf8mb4"},
    collations={"utf8mb4_unicode_ci"},
)
SQLITE = ServerCapabilities(dialect="sqlite")


def test_unsupported_engine_charset_and_collation_are_replaced() -> None:
    sql = (
        "CREATE TABLE `wp_posts` (`ID` bigint) ENGINE=Aria PAGE_CHECKSUM=1 TRANSACTIONAL=1 "
        "DEFAULT CHARSET=latin9 COLLATE=latin9_bin"
    )

    rewritten, engine = prepare_create_table(sql, MYSQL)
    assert engine == "MyISAM"
    assert "ENGINE=MyISAM" in rewritten
    assert "PAGE_CHECKSUM" not in rewritten
    assert "TRANSACTIONAL" not in rewritten
    assert "latin9" not in rewritten

    with_collate, _engine = prepare_create_table(sql, MYSQL, restore_collate="utf8mb4_unicode_ci")
    assert "COLLATE=utf8mb4_unicode_ci" in with_collate


def test_supported_table_options_are_kept() -> None:
    sql = "CREATE TABLE `wp_posts` (`ID` bigint) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_unicode_ci"

    assert prepare_create_table(sql, MYSQL) == (sql, "InnoDB")


def test_sqlite_drops_mysql_table_options() -> None:
    sql = "CREATE TABLE wp_posts (ID INTEGER) ENGINE=InnoDB AUTO_INCREMENT=5 DEFAULT CHARSET=utf8mb4"

    assert prepare_create_table(sql, SQLITE) == ("CREATE TABLE wp_posts (ID INTEGER)", "(?)")


def test_set_names_falls_back_to_utf8() -> None:
    assert rewrite_set_names("SET NAMES latin9", MYSQL) == ("SET NAMES utf8", "latin9")
    assert rewrite_set_names("/*!40101 SET NAMES utf8mb4 */", MYSQL) == ("/*!40101 SET NAMES utf8mb4 */", "utf8mb4")
    assert rewrite_set_names("SELECT 1", MYSQL) == ("SELECT 1", None)


def test_definers_are_stripped() -> None:
    view = "CREATE ALGORITHM=UNDEFINED DEFINER=`root`@`localhost` SQL SECURITY DEFINER VIEW `wp_v` AS SELECT 1"
    assert strip_view_definer(view) == "CREATE ALGORITHM=UNDEFINED SQL SECURITY INVOKER VIEW `wp_v` AS SELECT 1"

    trigger = "CREATE DEFINER=`root`@`localhost` TRIGGER t1 BEFORE INSERT ON x FOR EACH ROW SET @a=1"
    assert strip_trigger_definer(trigger) == "CREATE TRIGGER t1 BEFORE INSERT ON x FOR EACH ROW SET @a=1"

    routine = "CREATE DEFINER=`root`@`%` FUNCTION f(a INT) RETURNS int(11) DETERMINISTIC RETURN a"
    assert strip_routine_definer(routine) == (
        "CREATE FUNCTION f(a INT) RETURNS int(11) SQL SECURITY INVOKER DETERMINISTIC RETURN a"
    )


def test_generated_columns_are_detected_and_reapplied() -> None:
    create = (
        "CREATE TABLE `wp_totals` (`id` int NOT NULL, "
        "`total` int GENERATED ALWAYS AS (`a` + `b`) PERSISTENT, "
        "`label` varchar(10) AS (concat(`x`, ',')) VIRTUAL, "
        "PRIMARY KEY (`id`))"
    )

    columns = parse_generated_columns(create)

    assert [(column.name, column.is_virtual) for column in columns] == [("total", False), ("label", True)]
    assert corrective_alters("wp_totals", columns[:1], MYSQL) == [
        "ALTER TABLE `wp_totals` MODIFY COLUMN `total` int GENERATED ALWAYS AS (`a` + `b`) STORED"
    ]
    assert corrective_alters("wp_totals", columns, SQLITE) == []
    assert parse_generated_columns("CREATE TABLE t (id int)") == []


def test_insert_rewrites_for_generated_columns() -> None:
    generated = [GeneratedColumn(name="total", definition="int AS (a + b) STORED", is_virtual=False)]

    assert insert_targets_generated("INSERT INTO `t` (`id`, `a`) VALUES (1, 2)", generated) is False
    assert insert_targets_generated("INSERT INTO `t` (`id`, `total`) VALUES (1, 2)", generated) is True
    assert insert_targets_generated("INSERT INTO `t` VALUES (1, 2, 3)", generated) is True
    assert to_insert_if_absent("INSERT INTO `t` VALUES (1)", "mysql") == "INSERT IGNORE INTO `t` VALUES (1)"
    assert to_insert_if_absent("INSERT INTO `t` VALUES (1)", "sqlite") == "INSERT OR IGNORE INTO `t` VALUES (1)"


def test_driver_errors_are_classified_by_code() -> None:
    lost = classify_db_error(OperationalError("SELECT 1", {}, Exception(2006, "MySQL server has gone away")))
    duplicate = classify_db_error(IntegrityError("INSERT", {}, Exception(1062, "Duplicate entry '1'")))
    other = OperationalError("SELEC 1", {}, Exception("syntax error"))

    assert isinstance(lost, DatabaseConnectionLost)
    assert isinstance(duplicate, DuplicateKeyError)
    assert classify_db_error(other) is other


def test_missing_absolute_upload_path_is_reset(tmp_path: Path) -> None:
    engine = create_engine(f"sqlite:///{(tmp_path / 'site.sqlite3').as_posix()}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE wp_options (option_name TEXT PRIMARY KEY, option_value TEXT)"))
        conn.execute(text("INSERT INTO wp_options VALUES ('upload_path', '/nowhere/snapvault/uploads')"))
        upload_path_fixup(RestoredTableContext(connection=conn, table="wp_options", old_prefix="wp_", new_prefix="wp_"))
        reset = conn.execute(text("SELECT option_value FROM wp_options WHERE option_name = 'upload_path'")).scalar_one()

        conn.execute(text("UPDATE wp_options SET option_value = :path"), {"path": tmp_path.as_posix()})
        upload_path_fixup(RestoredTableContext(connection=conn, table="wp_options", old_prefix="wp_", new_prefix="wp_"))
        kept = conn.execute(text("SELECT option_value FROM wp_options WHERE option_name = 'upload_path'")).scalar_one()

    assert reset == ""
    assert kept == tmp_path.as_posix()
    engine.dispose()


def test_usermeta_prefix_rewrite_touches_only_leading_prefix(tmp_path: Path) -> None:
    engine = create_engine(f"sqlite:///{(tmp_path / 'site.sqlite3').as_posix()}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE xyz_usermeta (umeta_id INTEGER PRIMARY KEY, meta_key TEXT)"))
        conn.execute(
            text("INSERT INTO xyz_usermeta (meta_key) VALUES (:key)"),
            [{"key": "wp_capabilities"}, {"key": "wp_wp_custom"}, {"key": "plugin_wp_seen"}, {"key": "wpx_level"}],
        )
        usermeta_prefix_fixup(RestoredTableContext(connection=conn, table="xyz_usermeta", old_prefix="wp_", new_prefix="xyz_"))
        keys = conn.execute(text("SELECT meta_key FROM xyz_usermeta ORDER BY umeta_id")).scalars().all()

    assert keys == ["xyz_capabilities", "xyz_wp_custom", "plugin_wp_seen", "wpx_level"]
    engine.dispose()
