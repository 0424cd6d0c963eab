import argparse
import sys

from dwi_io.converter import DWICONVERT_VERSION
from cli import run_dwi_convert


def main(argv=None):
    argv = sys.argv[1:] if argv is None else list(argv)
    parser = argparse.ArgumentParser(
        prog='dwiconvert',
        description="Main command-line interface for dwiconvert.\n"
                    "Commands: dicom2nrrd, dicom2fsl, nrrd2fsl, fsl2nrrd. "
                    "Use '<command> -h' for the options of a command.",
        formatter_class=argparse.RawTextHelpFormatter,
        add_help=False
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {DWICONVERT_VERSION}',
        help="Show program's version number and exit."
    )
    parser.add_argument('-h', '--help', action='store_true', help="Show this help message and exit.")

    if not argv:
        parser.print_help(sys.stderr)
        sys.exit(1)

    # Everything after the global options belongs to the conversion command.
    args, remaining_argv = parser.parse_known_args(argv[:1])
    if args.help:
        run_dwi_convert.build_parser().print_help()
        return
    run_dwi_convert.main(remaining_argv + argv[1:])

if __name__ == '__main__':
    main()
