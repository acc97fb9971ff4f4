import pathlib
import shutil
import sys
import re
import select
import subprocess
import os
import typing

import pi_imager.pretty_print as pretty_print


class Shell_Executor:
    """
    A collection of functions to execute shell commands
    """

    def __init__(
        self,
        prohibit_output_processing: bool = False,
        enforce_command_printing: bool = False,
    ):
        # Prohibit output scrolling. This setting overwrites all other output scrolling settings.
        self._prohibit_output_processing = prohibit_output_processing
        # Print every command before it is executed
        self._enforce_command_printing = enforce_command_printing

    @staticmethod
    def _build_env(env: typing.Optional[typing.Dict[str, str]]) -> typing.Dict[str, str]:
        full_env = os.environ.copy()
        if env:
            full_env.update(env)
        return full_env

    def _print_command(self, command: typing.List[str], print_command: bool):
        if print_command or self._enforce_command_printing:
            pretty_print.print_info(f"Executing: {' '.join(str(item) for item in command)}")

    def get_sh_results(
        self,
        command: typing.List[str],
        cwd: pathlib.Path = None,
        check: bool = True,
        input: str = None,
        env: typing.Dict[str, str] = None,
    ) -> subprocess.CompletedProcess:
        """(Google documentation style:
            https://github.com/google/styleguide/blob/gh-pages/pyguide.md#38-comments-and-docstrings)
        Runs a command and returns all output. The command is never interpreted by a shell.

        Args:
            command:
                The command to execute as a list of strings. Example: ['losetup', '--find', '--show', 'a.img'].
            cwd:
                If cwd is not None, the working directory is changed to cwd before the command is executed.
            check:
                If set to True, the exit code of the process is checked.
            input:
                Text passed to the standard input of the process.
            env:
                Additional environment variables for the process.

        Returns:
            An object that contains stdout (str), stderr (str) and returncode (int).

        Raises:
            subprocess.CalledProcessError: If check is True and the return code of the subprocess is not 0
        """

        command = [str(item) for item in command]
        self._print_command(command=command, print_command=False)
        try:
            result = subprocess.run(
                command,
                cwd=cwd,
                input=input,
                capture_output=True,
                text=True,
                check=check,
                env=self._build_env(env),
            )
        except subprocess.CalledProcessError as e:
            if e.stdout:
                print(f"\n{pretty_print.mask(e.stdout)}")
            if e.stderr:
                print(f"\n{pretty_print.mask(e.stderr)}")
            pretty_print.print_error(
                "The return code of a sub-process was not equal to zero (see output above).\n"
                f"return code: {e.returncode}\n"
                f"command: {' '.join(command)}"
            )
            raise

        return result

    def exec_sh_command(
        self,
        command: typing.List[str],
        cwd: pathlib.Path = None,
        check: bool = True,
        env: typing.Dict[str, str] = None,
        logfile: pathlib.Path = None,
        output_scrolling: bool = False,
        visible_lines: int = 30,
        print_command: bool = False,
    ) -> int:
        """(Google documentation style:
            https://github.com/google/styleguide/blob/gh-pages/pyguide.md#38-comments-and-docstrings)
        Executes a command. If the srolling view is enabled or the output is to be logged, this function loses
        some output of commands that display a progress bar or someting similar. The 'tee' shell command has the
        same issue.

        Args:
            command:
                The command to execute as a list of strings. Example: ['chroot', '/mnt', 'apt-get', 'update'].
                The command is never interpreted by a shell.
            cwd:
                If cwd is not None, the working directory is changed to cwd before the commands are executed.
            check:
                If set to True, the exit code of the process is checked.
            env:
                Additional environment variables for the process.
            logfile:
                Logfile as pathlib.Path object. None if no log file is to be used.
            output_scrolling:
                If True, the output of the command is printed in a scrolling view. The printed output is updated
                at runtime and the latest lines are always displayed.
            visible_lines:
                Maximum number of output lines to be printed if scolling_output is True. If set to 0, no output
                is visible.
            print_command:
                If True, the command is printed before it is executed.

        Returns:
            The return code of the process.

        Raises:
            subprocess.CalledProcessError: If check is True and the return code of the subprocess is not 0
        """

        command = [str(item) for item in command]
        self._print_command(command=command, print_command=print_command)
        full_env = self._build_env(env)

        # If scolling output is disabled and the output should not be hidden or logged, subprocess.run can be used
        # to run the subprocess
        if self._prohibit_output_processing or (output_scrolling == False and visible_lines != 0 and logfile == None):
            try:
                result = subprocess.run(command, cwd=cwd, check=check, env=full_env)
            except subprocess.CalledProcessError as e:
                pretty_print.print_error(
                    "The return code of a sub-process was not equal to zero (see output above).\n"
                    f"return code: {e.returncode}\n"
                    f"command: {' '.join(command)}"
                )
                raise
            return result.returncode

        # Remove old logfile
        if logfile != None:
            logfile.parent.mkdir(parents=True, exist_ok=True)
            logfile.unlink(missing_ok=True)

        # Regex to strip ANSI escape sequences from strings
        ansi_escape = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")

        # Prepare to process the command line output of the command
        printed_lines = 0
        last_lines = []

        def update_last_lines(line):
            if visible_lines <= 0:
                return
            if len(last_lines) >= visible_lines:
                last_lines.pop(0)
            last_lines.append(line)

        # Tell the user where the complete output is logged
        if logfile:
            pretty_print.print_info(f"The complete output of this process is logged here: {logfile}")

        # Start the subprocess
        process = subprocess.Popen(
            command,
            cwd=cwd,
            env=full_env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )

        # Continuously read from the process output
        while True:
            try:
                # Wait for any of the pipes to have available data
                readable = select.select([process.stdout, process.stderr], [], [])[0]

            except KeyboardInterrupt:
                # Gracefully handle Ctrl+C
                process.kill()
                raise

            # Read one line from the pipe(s) in which data is available
            stdout_line = None
            if process.stdout in readable:
                stdout_line = process.stdout.readline()
                # Strip all invisible elements from the end of the string (especially new line characters, etc.)
                stdout_line = pretty_print.mask(stdout_line.rstrip())

            stderr_line = None
            if process.stderr in readable:
                stderr_line = process.stderr.readline()
                # Strip all invisible elements from the end of the string (especially new line characters, etc.)
                stderr_line = pretty_print.mask(stderr_line.rstrip())

            # If both are empty and the process is done, break
            if not stdout_line and not stderr_line and process.poll() is not None:
                break

            # If provided, write to log file
            if logfile:
                with logfile.open("a") as f:
                    if stdout_line:
                        # Strip ANSI escape sequences as they cannot be printed to a file
                        print(ansi_escape.sub("", stdout_line), file=f)
                    if stderr_line:
                        # Strip ANSI escape sequences as they cannot be printed to a file
                        print(ansi_escape.sub("", stderr_line), file=f)

            if output_scrolling:
                # Add output of the command to buffer
                if stdout_line:
                    update_last_lines(stdout_line)
                if stderr_line:
                    update_last_lines(stderr_line)

                # Move the cursor to the beginning of the scrolling output
                for _ in range(printed_lines):
                    # Move the cursor up one line
                    sys.stdout.write("\033[F")
                sys.stdout.flush()

                # Print output
                printed_lines = 0
                terminal_width = shutil.get_terminal_size().columns
                for line in last_lines:
                    if len(line) > terminal_width:
                        # Replace tabs with spaces to get a realistic line length
                        line = line.expandtabs()
                        # Limit the line length to avoid wrapping
                        line = line[: (terminal_width - 3)] + "..."
                    # Replace content of this line. The line is cleared before anything new is printed.
                    sys.stdout.write("\033[K" + line + "\r\n")
                    printed_lines += 1
                sys.stdout.flush()
            elif visible_lines != 0:
                # Print output
                if stdout_line:
                    sys.stdout.write(stdout_line + "\r\n")
                if stderr_line:
                    sys.stdout.write(stderr_line + "\r\n")
                sys.stdout.flush()

        # Close the streams
        process.stdout.close()
        process.stderr.close()
        process.wait()

        # Check return code
        if check and process.returncode != 0:
            pretty_print.print_error(
                "The return code of a sub-process was not equal to zero (see output above).\n"
                f"return code: {process.returncode}\n"
                f"command: {' '.join(command)}"
            )
            raise subprocess.CalledProcessError(returncode=process.returncode, cmd=command)

        return process.returncode

    def prohibit_output_processing(self, state: bool):
        """
        Enable or disable shell output processing

        Args:
            state:
                True to prohibit processing of shell output, False to allow processing of shell output

        Returns:
            None

        Raises:
            None
        """

        self._prohibit_output_processing = state

    def enforce_command_printing(self, state: bool):
        self._enforce_command_printing = state
