import os
import pathlib
import typing
import pydantic

from pi_imager.exceptions import Malformed_Hook_Line_Error, Hook_Script_Not_Found_Error, Config_Not_Found_Error
from raspberrypi_support.raspberrypi_image_model import Hook_Spec, resolve_local_source

# Number of fields of a parameterized hook record without the optional post-install commands
PARAMETERIZED_FIELDS = 5


class Hook_List_Parser:
    """
    Parses hook records. A record is either a script path or a pipe separated list of
    script|source|revision|install destination|dependency list[|post-install commands].
    """

    @staticmethod
    def _resolve_script(script: str, base_dir: pathlib.Path, source: str, line_nr: int) -> str:
        script_path = pathlib.Path(script).expanduser()
        if not script_path.is_absolute():
            script_path = base_dir / script_path
        # Normalize without following symlinks
        script_path = pathlib.Path(os.path.normpath(script_path))
        if not script_path.is_file():
            raise Hook_Script_Not_Found_Error(script_path, source=source, line_nr=line_nr)
        return str(script_path)

    @staticmethod
    def parse_record(record: str, base_dir: pathlib.Path, source: str, line_nr: int) -> Hook_Spec:
        """
        Parses a single hook record.

        Args:
            record:
                The record, without line break.
            base_dir:
                Directory against which a relative script path and a relative 'file://' source are resolved.
            source:
                Origin of the record used in error messages (file path or 'command line').
            line_nr:
                Line number or position of the record used in error messages.

        Returns:
            The hook.

        Raises:
            Malformed_Hook_Line_Error:
                If the record has 2, 3 or 4 fields, no script or an invalid source.
            Hook_Script_Not_Found_Error:
                If the script does not exist.
        """

        fields = record.split("|")
        if len(fields) != 1 and len(fields) < PARAMETERIZED_FIELDS:
            raise Malformed_Hook_Line_Error(
                source=source,
                line_nr=line_nr,
                reason=f"Expected 1 or at least {PARAMETERIZED_FIELDS} '|' separated fields, found {len(fields)}",
            )

        script = fields[0].strip()
        if not script:
            raise Malformed_Hook_Line_Error(source=source, line_nr=line_nr, reason="No hook script specified")
        script = Hook_List_Parser._resolve_script(script, base_dir=base_dir, source=source, line_nr=line_nr)

        if len(fields) == 1:
            return Hook_Spec(script=script)

        post_install = "|".join(fields[PARAMETERIZED_FIELDS:]) if len(fields) > PARAMETERIZED_FIELDS else None
        try:
            return Hook_Spec(
                script=script,
                source=resolve_local_source(fields[1].strip(), base_dir),
                revision=fields[2].strip(),
                install_dest=fields[3].strip(),
                dep_list=fields[4].strip(),
                post_install=post_install,
            )
        except pydantic.ValidationError as e:
            reasons = "; ".join(err["msg"] for err in e.errors())
            raise Malformed_Hook_Line_Error(source=source, line_nr=line_nr, reason=reasons) from None

    @staticmethod
    def parse_entry(entry: dict, base_dir: pathlib.Path, source: str, line_nr: int) -> Hook_Spec:
        """
        Parses a hook that is given as a mapping in the build configuration.

        Args:
            entry:
                Mapping with the key 'script' and optionally 'source', 'revision', 'install_dest', 'dep_list',
                'post_install' and 'marker'.
            base_dir:
                Directory against which a relative script path and a relative 'file://' source are resolved.
            source:
                Origin of the entry used in error messages.
            line_nr:
                Position of the entry used in error messages.

        Returns:
            The hook.

        Raises:
            Malformed_Hook_Line_Error:
                If the entry is not a valid hook description.
            Hook_Script_Not_Found_Error:
                If the script does not exist.
        """

        script = entry.get("script")
        if not isinstance(script, str) or not script.strip():
            raise Malformed_Hook_Line_Error(source=source, line_nr=line_nr, reason="No hook script specified")

        values = dict(entry)
        values["script"] = Hook_List_Parser._resolve_script(
            script.strip(), base_dir=base_dir, source=source, line_nr=line_nr
        )
        if isinstance(values.get("source"), str):
            values["source"] = resolve_local_source(values["source"], base_dir)
        try:
            return Hook_Spec(**values)
        except pydantic.ValidationError as e:
            reasons = "; ".join(err["msg"] for err in e.errors())
            raise Malformed_Hook_Line_Error(source=source, line_nr=line_nr, reason=reasons) from None

    @staticmethod
    def parse(hook_list: pathlib.Path, hooks: typing.List[Hook_Spec]) -> typing.List[Hook_Spec]:
        """
        Appends the hooks of a hook list to a list of hooks.

        Args:
            hook_list:
                Path of the hook list.
            hooks:
                Hooks collected so far.

        Returns:
            The collected hooks followed by the hooks of the hook list in file order.

        Raises:
            Config_Not_Found_Error:
                If the hook list does not exist.
            Malformed_Hook_Line_Error:
                If a line is not a valid hook record.
            Hook_Script_Not_Found_Error:
                If a script does not exist.
        """

        if not hook_list.is_file():
            raise Config_Not_Found_Error(hook_list, what="Hook list")

        parsed = list(hooks)
        with hook_list.open("r", encoding="utf-8") as f:
            for line_nr, line in enumerate(f, start=1):
                record = line.strip()
                if not record or record.startswith("#"):
                    continue
                parsed.append(
                    Hook_List_Parser.parse_record(
                        record, base_dir=hook_list.parent, source=str(hook_list), line_nr=line_nr
                    )
                )

        return parsed
