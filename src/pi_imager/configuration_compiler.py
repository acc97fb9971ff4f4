import typing
import pathlib
import yaml
import re

from pi_imager.exceptions import Config_Not_Found_Error, Configuration_Error


class Configuration_Compiler:
    """
    A class to compile the build configuration from one or more YAML files
    """

    @staticmethod
    def merge_dicts(target: dict, source: dict) -> dict:
        """
        Recursively merge two dictionaries.

        Args:
            target:
                Target dictionary that receives values from the source dictionary.
            source:
                Source dictionary that overwrites values in the target dictionary.

        Returns:
            Merged target dictionary.

        Raises:
            None
        """

        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                # If both values are dictionaries, merge them recursively
                target[key] = Configuration_Compiler.merge_dicts(target[key], value)
            elif key in target and isinstance(target[key], list) and isinstance(value, list):
                # If both values are lists, merge them without duplicating elements. The order matters for hooks.
                target[key] = target[key] + [item for item in value if item not in target[key]]
            else:
                # If the value is not a dict or a list or if the key is not yet in the result, simply assign the value
                target[key] = value

        return target

    @staticmethod
    def _load_cfg_file(
        config_file: pathlib.Path,
        path_resolver: typing.Optional[typing.Callable[[dict, pathlib.Path], dict]],
        import_chain: typing.List[pathlib.Path],
    ) -> typing.Tuple[dict, list]:
        """
        Recursively merge configuration YAML files by tracing the import keys.

        Args:
            config_file:
                The configuration file to operate on.
            path_resolver:
                Function that makes the relative paths of one configuration layer absolute. It receives the layer
                and the directory of the file the layer was read from.
            import_chain:
                Files that are currently being imported. Used to detect import cycles.

        Returns:
            Fully assembled configuration and a list of all files read.

        Raises:
            Config_Not_Found_Error:
                If the file or one of its imports does not exist.
            Configuration_Error:
                If a file cannot be parsed or the imports form a cycle.
        """

        config_file = config_file.absolute()
        if config_file in import_chain:
            raise Configuration_Error(f"Import cycle detected: {' -> '.join(str(f) for f in import_chain)}")
        if not config_file.is_file():
            raise Config_Not_Found_Error(config_file, what="Configuration file")

        try:
            with config_file.open("r") as f:
                cfg_layer = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise Configuration_Error(f"Unable to parse {config_file}: {e}") from e

        if not isinstance(cfg_layer, dict):
            raise Configuration_Error(f"The top level of {config_file} must be a mapping")

        imports = cfg_layer.pop("import", None) or []
        if path_resolver is not None:
            cfg_layer = path_resolver(cfg_layer, config_file.parent)

        # Add file to list of read configuration files
        read_files = [config_file]

        # Directly return the cfg layer if it doesn't contain an 'import' key
        gathered_cfg = cfg_layer

        for file_name in imports:
            # Recursively merge the so far composed return value with the file to be imported
            cfg_buffer, files_buffer = Configuration_Compiler._load_cfg_file(
                config_file=config_file.parent / file_name,
                path_resolver=path_resolver,
                import_chain=import_chain + [config_file],
            )
            gathered_cfg = Configuration_Compiler.merge_dicts(target=cfg_buffer, source=gathered_cfg)
            read_files = read_files + files_buffer

        return gathered_cfg, read_files

    @staticmethod
    def _resolve_placeholders(build_cfg: dict, search_object):
        """
        Recursively search the configuration and replace all placeholders.

        Args:
            build_cfg:
                The entire configuration.
            search_object:
                The part of the configuration to be searched. The initial seed is the entire configuration.

        Returns:
            The part of the configuration provided in search_object with all placeholders replaced.

        Raises:
            Configuration_Error:
                If a placeholder does not point to a valid setting.
        """

        if isinstance(search_object, dict):
            # Traverse dictionary
            for key, value in search_object.items():
                search_object[key] = Configuration_Compiler._resolve_placeholders(build_cfg, value)

        elif isinstance(search_object, list):
            # Traverse list
            for i, item in enumerate(search_object):
                search_object[i] = Configuration_Compiler._resolve_placeholders(build_cfg, item)

        elif isinstance(search_object, str):
            # Replace placeholders in string, if present
            placeholder_pattern = r"\{\{([^\}]+)\}\}"
            str_buffer = search_object
            # Iterate over all placeholders
            for path in re.findall(placeholder_pattern, search_object):
                # Get value from configuration
                value = build_cfg
                for key in path.split("/"):
                    if not isinstance(value, dict) or key not in value:
                        raise Configuration_Error(
                            f"The following setting contains a placeholder that does not point to a valid setting: "
                            f"{search_object}"
                        )
                    value = value[key]
                # Replace placeholder with value
                str_buffer = str_buffer.replace(f"{{{{{path}}}}}", str(value))
            return str_buffer

        # If it's neither a dict, list, nor string, return the value as-is
        return search_object

    @staticmethod
    def compile(
        root_cfg_file: pathlib.Path,
        path_resolver: typing.Optional[typing.Callable[[dict, pathlib.Path], dict]] = None,
    ) -> typing.Tuple[dict, list]:
        """
        Compile the build configuration.

        Args:
            root_cfg_file:
                Path of the top level configuration file.
            path_resolver:
                Function that makes the relative paths of one configuration layer absolute.

        Returns:
            The fully assembled configuration and the list of all configuration files read.

        Raises:
            Config_Not_Found_Error:
                If a configuration file does not exist.
            Configuration_Error:
                If the configuration cannot be assembled.
        """

        # Merge config files
        build_cfg, read_cfg_files = Configuration_Compiler._load_cfg_file(
            config_file=root_cfg_file, path_resolver=path_resolver, import_chain=[]
        )

        # Resolve placeholders
        build_cfg = Configuration_Compiler._resolve_placeholders(build_cfg=build_cfg, search_object=build_cfg)

        return build_cfg, read_cfg_files
